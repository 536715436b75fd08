"""Error types raised by the explorer engine."""


class ExplorerError(Exception):
    """Base class for all explorer engine errors."""


class ChainConnectionError(ExplorerError, ConnectionError):
    """Transport-level failure talking to the node.

    Raised when a connection cannot be established within the configured
    timeout or when the websocket drops underneath an in-flight call.
    """


class NotConnectedError(ExplorerError):
    """A query was attempted while no node session is open."""

    def __init__(self, message: str = "Not connected to chain") -> None:
        super().__init__(message)


class BlockNotFoundError(ExplorerError):
    """The node has no block for the requested height or hash."""

    def __init__(self, block_id: int | str) -> None:
        self.block_id = block_id
        super().__init__(f"Block not found: {block_id}")


class MalformedBlockError(ExplorerError):
    """A block header or one of its extrinsics could not be decoded."""


class StorageDecodeError(ExplorerError):
    """A pallet storage record did not match its expected shape."""
