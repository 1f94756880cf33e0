from dataclasses import dataclass
from enum import Enum


class PrincipalRole(str, Enum):
    ADMIN = "admin"
    CLIENT = "client"


@dataclass(slots=True)
class Principal:
    subject: str
    role: PrincipalRole
    display_name: str = ""

    @property
    def is_admin(self) -> bool:
        return self.role is PrincipalRole.ADMIN

    def require_admin(self) -> None:
        if not self.is_admin:
            raise PermissionError("admin role required")


def parse_role(value: object) -> PrincipalRole | None:
    if not isinstance(value, str):
        return None
    try:
        return PrincipalRole(value.strip().lower())
    except ValueError:
        return None
