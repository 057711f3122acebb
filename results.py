from dataclasses import dataclass
from typing import ClassVar, Generic, Optional, TypeVar, Union

T = TypeVar("T")
E = TypeVar("E")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err(Generic[E]):
    error: E

    @property
    def ok(self) -> bool:
        return False


Result = Union[Ok[T], Err[E]]


@dataclass(frozen=True)
class CabinetError:
    message: str

    retryable: ClassVar[bool] = False
    code: ClassVar[str] = "error"


@dataclass(frozen=True)
class ValidationError(CabinetError):
    code: ClassVar[str] = "validation_error"


@dataclass(frozen=True)
class NotFound(CabinetError):
    code: ClassVar[str] = "not_found"


@dataclass(frozen=True)
class Expired(CabinetError):
    code: ClassVar[str] = "expired"


@dataclass(frozen=True)
class InsufficientStock(CabinetError):
    line_id: Optional[str] = None
    requested: int = 0
    available: int = 0

    retryable: ClassVar[bool] = True
    code: ClassVar[str] = "insufficient_stock"


@dataclass(frozen=True)
class InvalidStateTransition(CabinetError):
    current: Optional[str] = None
    attempted: Optional[str] = None

    code: ClassVar[str] = "invalid_state_transition"


@dataclass(frozen=True)
class InconsistentWrite(CabinetError):
    """Custody was recorded but the ledger was not updated. Needs an operator."""

    record_id: Optional[str] = None

    code: ClassVar[str] = "inconsistent_write"


@dataclass(frozen=True)
class StoreTimeout(CabinetError):
    retryable: ClassVar[bool] = True
    code: ClassVar[str] = "store_timeout"
