"""Exception types raised by strainphase.

Every failure is either a full-run abort or a documented default; nothing is
retried. ``main()`` turns any ``StrainPhaseError`` into a logged error and a
nonzero exit status.
"""


class StrainPhaseError(Exception):
    """Base class for all strainphase errors."""


class ConfigurationError(StrainPhaseError, ValueError):
    """Invalid run configuration or malformed input field, raised before work starts."""


class InconsistentMatrixError(StrainPhaseError, LookupError):
    """The population matrix, dendrogram or cluster mapping contradicts itself."""


class FactorizationError(StrainPhaseError, RuntimeError):
    """The factorization routine or external factorization process failed."""
