"""Holder identity: the user or organization that owns a subscription."""

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from talentgate.core.exceptions import InvalidHolderError
from talentgate.entitlements.models import HolderType

MAX_HOLDER_ID_LENGTH = 64


@dataclass(frozen=True, slots=True)
class Holder:
    """Discriminated holder reference ``{type, id}``.

    Instances are immutable; build them with :meth:`parse` when the input
    comes from outside the process.
    """

    type: HolderType
    id: str

    @classmethod
    def parse(cls, holder_type: str | HolderType, holder_id: object) -> "Holder":
        """Validate raw input and build a holder.

        Raises:
            InvalidHolderError: If the type is unknown or the id is empty.
        """
        try:
            parsed_type = HolderType(holder_type)
        except ValueError as e:
            raise InvalidHolderError(
                f"Unknown holder type {holder_type!r}",
                details={"holder_type": str(holder_type)},
            ) from e

        if not isinstance(holder_id, str | int) or isinstance(holder_id, bool):
            raise InvalidHolderError("Holder id must be a string", details={"holder_type": parsed_type.value})

        parsed_id = str(holder_id).strip()
        if not parsed_id or len(parsed_id) > MAX_HOLDER_ID_LENGTH:
            raise InvalidHolderError(
                "Holder id must be between 1 and 64 characters",
                details={"holder_type": parsed_type.value},
            )
        return cls(type=parsed_type, id=parsed_id)

    @classmethod
    def user(cls, user_id: str) -> "Holder":
        return cls.parse(HolderType.USER, user_id)

    @classmethod
    def org(cls, org_id: str) -> "Holder":
        return cls.parse(HolderType.ORG, org_id)

    def __str__(self) -> str:
        return f"{self.type.value}:{self.id}"


@runtime_checkable
class HolderDirectory(Protocol):
    """Lookup of known users and organizations, provided by the host application."""

    async def exists(self, holder: Holder) -> bool: ...
