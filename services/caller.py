"""Authenticated caller identity passed from HTTP handlers into services"""

from dataclasses import dataclass

from models import UserRole


@dataclass(frozen=True)
class Caller:
    """User id and role taken from a verified bearer token"""

    id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN.value

    @property
    def is_brand(self) -> bool:
        return self.role == UserRole.BRAND.value

    @property
    def is_creator(self) -> bool:
        return self.role == UserRole.CREATOR.value
