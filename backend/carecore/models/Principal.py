from typing import Iterable

from pydantic import BaseModel, ConfigDict


class Principal(BaseModel):
    """
    Authenticated identity extracted from a validated access token.
    Created per request by the token validator and never persisted.
    """
    model_config = ConfigDict(frozen=True)

    id: str  # Subject (sub)
    username: str
    email: str | None = None
    name: str | None = None
    given_name: str | None = None
    family_name: str | None = None
    roles: tuple[str, ...] = ()
    scopes: tuple[str, ...] = ()

    def has_any_role(self, roles: Iterable[str]) -> bool:
        return any(role in self.roles for role in roles)

    def has_all_scopes(self, scopes: Iterable[str]) -> bool:
        return all(scope in self.scopes for scope in scopes)

    def with_profile(self, profile: dict) -> "Principal":
        """
        Returns a copy enriched with user-info profile fields.
        Identity (id) and authorization data (roles, scopes) are never taken from the profile.
        """
        updates = {
            "email": profile.get("email") or self.email,
            "name": profile.get("name") or self.name,
            "given_name": profile.get("given_name") or self.given_name,
            "family_name": profile.get("family_name") or self.family_name,
        }
        username = profile.get("preferred_username")
        if username:
            updates["username"] = username
        return self.model_copy(update=updates)
