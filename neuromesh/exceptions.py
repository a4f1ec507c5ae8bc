"""Custom exception hierarchy for neuromesh.

Protocol operations (votes, resolutions, activations, approvals) report
failure through return values. These exceptions cover infrastructure
failures and are caught at the replication / maturation boundary.
"""


class NeuromeshError(Exception):
    """Base for all neuromesh errors."""


class StoreUnavailableError(NeuromeshError):
    """The persistence backend could not be reached."""


class RelayError(NeuromeshError):
    """The relay hub rejected a request or could not be reached."""


class ProposalApplyError(NeuromeshError):
    """A mutation proposal could not be applied to the graph."""
