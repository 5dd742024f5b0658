from dataclasses import dataclass, field

MAINTENANCE_SCOPE = "maintenance:write"

ROLE_SCOPES: dict[str, set[str]] = {
    "user": {"social:read", "social:write"},
    "admin": {"social:read", "social:write", MAINTENANCE_SCOPE},
}


@dataclass(slots=True)
class Principal:
    """Requester identity as reported by the hosted identity provider."""

    subject: str
    role: str = "user"
    scopes: set[str] = field(default_factory=set)
    email: str | None = None

    def require_scopes(self, required: set[str]) -> None:
        missing = required - self.scopes
        if missing:
            raise PermissionError(f"missing required scopes: {sorted(missing)}")


def scopes_for_role(role: str) -> set[str]:
    return set(ROLE_SCOPES.get(role, ROLE_SCOPES["user"]))
