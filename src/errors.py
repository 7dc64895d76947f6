"""Error taxonomy for the indexer.

FatalError subclasses abort the run and surface to the caller.
RecoverableError subclasses are caught inside the fetch loop, per window
or per event, and reported instead of raised.
"""


class IndexerError(Exception):
    pass


class FatalError(IndexerError):
    pass


class RecoverableError(IndexerError):
    pass


class ConfigError(FatalError):
    """Unknown blockchain/network or invalid settings."""


class SinkError(FatalError):
    pass


class CheckpointError(FatalError):
    pass


class CheckpointConflict(CheckpointError):
    """The checkpoint table changed between read and write."""


class RpcError(RecoverableError):
    pass
