from dataclasses import dataclass


@dataclass(slots=True)
class Principal:
    subject: str
    scopes: set[str]
    role: str | None = None
    actor_id: str | None = None
    display_name: str | None = None

    def require_scopes(self, required: set[str]) -> None:
        missing = required - self.scopes
        if missing:
            raise PermissionError(f"missing required scopes: {sorted(missing)}")

    def has_scopes(self, required: set[str]) -> bool:
        return required <= self.scopes
