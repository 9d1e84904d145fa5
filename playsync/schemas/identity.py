# playsync/schemas/identity.py
"""Who sat at the table: exactly one of a local user, a BGG username or a guest name."""

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class UserIdentity(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["user"] = "user"
    user_id: int


class ExternalUsername(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["bgg"] = "bgg"
    username: str = Field(min_length=1)

    @field_validator("username")
    @classmethod
    def _strip(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("username must not be blank")
        return value


class GuestName(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["guest"] = "guest"
    name: str = Field(min_length=1)

    @field_validator("name")
    @classmethod
    def _strip(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("guest name must not be blank")
        return value


ParticipantIdentity = Annotated[
    Union[UserIdentity, ExternalUsername, GuestName],
    Field(discriminator="kind"),
]

IdentityKey = tuple[str, str]


def identity_key(identity: Union[UserIdentity, ExternalUsername, GuestName]) -> IdentityKey:
    """Comparable key for an identity; score, position and winner never take part."""
    if isinstance(identity, UserIdentity):
        return ("user", str(identity.user_id))
    if isinstance(identity, ExternalUsername):
        return ("bgg", identity.username.casefold())
    return ("guest", identity.name.casefold())


def describe_identity(identity: Union[UserIdentity, ExternalUsername, GuestName]) -> str:
    if isinstance(identity, UserIdentity):
        return f"user #{identity.user_id}"
    if isinstance(identity, ExternalUsername):
        return f"bgg:{identity.username}"
    return identity.name
