"""Exception types raised while turning caller input into network input."""

from __future__ import annotations

ACCEPTED_INPUT_TYPES = "MediaElement | PIL.Image.Image | bytes | os.PathLike | numpy 3D array, or a registered media id"


def index_hint(index: int | None) -> str:
    return f" at input index {index}:" if index is not None else ""


class NetInputError(ValueError):
    """Base class for input validation failures.

    ``index`` is the position of the offending element when the caller
    passed a list, otherwise ``None``.
    """

    def __init__(self, message: str, index: int | None = None) -> None:
        super().__init__(message)
        self.index = index


class EmptyInputError(NetInputError):
    def __init__(self) -> None:
        super().__init__("to_net_input - empty list passed as input")


class InvalidBatchSizeError(NetInputError):
    def __init__(self, batch_size: int, index: int | None) -> None:
        super().__init__(
            f"to_net_input -{index_hint(index)} 4D tensor with batch size {batch_size} passed,"
            " but not supported in input list",
            index,
        )
        self.batch_size = batch_size


class UnresolvedIdentifierError(NetInputError):
    def __init__(self, identifier: str, index: int | None) -> None:
        super().__init__(
            f"to_net_input -{index_hint(index)} string passed, but could not resolve media for id {identifier}"
            f" (expected one of {ACCEPTED_INPUT_TYPES})",
            index,
        )
        self.identifier = identifier


class UnsupportedTypeError(NetInputError):
    def __init__(self, type_name: str, index: int | None) -> None:
        super().__init__(
            f"to_net_input -{index_hint(index)} expected media to be of type {ACCEPTED_INPUT_TYPES},"
            f" got {type_name}",
            index,
        )
        self.type_name = type_name


class MediaLoadError(ValueError):
    """Raised when a media element cannot be decoded into pixels."""
