"""Account identity as seen by the unlock engine."""

from dataclasses import dataclass


@dataclass(frozen=True)
class Identity:
    id: str
    email: str | None = None
    access_token: str | None = None

    @classmethod
    def from_session(cls, session_data: dict) -> "Identity | None":
        if not session_data or not session_data.get("id"):
            return None
        return cls(
            id=str(session_data["id"]),
            email=session_data.get("email"),
            access_token=session_data.get("access_token"),
        )

    def to_session(self) -> dict:
        return {"id": self.id, "email": self.email, "access_token": self.access_token}
