from __future__ import annotations

import enum

from ..extensions import db
from ..time_utils import to_utc_z


class Role(str, enum.Enum):
    """
    Closed set of roles in the distribution hierarchy.

    issuer -> regional_distributor -> distributor -> field_agent

    Legacy role strings are normalized once, here, at the identity boundary.
    """
    ISSUER = "issuer"
    REGIONAL_DISTRIBUTOR = "regional_distributor"
    DISTRIBUTOR = "distributor"
    FIELD_AGENT = "field_agent"

    @classmethod
    def from_legacy(cls, value: str) -> "Role":
        key = (value or "").strip().lower()
        try:
            return cls(key)
        except ValueError:
            pass
        if key not in LEGACY_ROLE_SYNONYMS:
            raise ValueError(f"unknown role: {value!r}")
        return LEGACY_ROLE_SYNONYMS[key]


LEGACY_ROLE_SYNONYMS = {
    "admin": Role.ISSUER,
    "stalkist": Role.REGIONAL_DISTRIBUTOR,
    "stockist": Role.REGIONAL_DISTRIBUTOR,
    "dealer": Role.DISTRIBUTOR,
    "dellear": Role.DISTRIBUTOR,
    "salesman": Role.FIELD_AGENT,
}


class User(db.Model):
    """
    Accounts for every tier of the distribution network.

    parent_id links a user to the account that created/owns it:
    regional distributors own distributors, distributors own field agents.
    Allocations may only target a direct child of the distributor.
    """
    __tablename__ = "users"
    __table_args__ = (
        db.Index("ix_users_parent_role", "parent_id", "role"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(64), nullable=False, unique=True, index=True)
    email = db.Column(db.String(255), nullable=False, unique=True)

    # Bcrypt hashed password
    password_hash = db.Column(db.String(255), nullable=False)

    role = db.Column(db.String(32), nullable=False, index=True)

    parent_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    last_login_at = db.Column(db.DateTime(timezone=True), nullable=True)

    parent = db.relationship("User", remote_side=[id], backref=db.backref("children", lazy=True))

    def __repr__(self) -> str:
        return f"<User id={self.id} username={self.username!r} role={self.role}>"

    @property
    def is_approver(self) -> bool:
        return self.role == Role.ISSUER

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "role": self.role,
            "parent_id": self.parent_id,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "last_login_at": to_utc_z(self.last_login_at) if self.last_login_at else None,
        }

    def to_summary(self) -> dict:
        return {"id": self.id, "username": self.username, "email": self.email}


class SessionToken(db.Model):
    """
    Bearer session tokens. Only the SHA-256 hash of the token is stored.
    """
    __tablename__ = "session_tokens"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    token_hash = db.Column(db.String(64), nullable=False, unique=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)
    last_used_at = db.Column(db.DateTime(timezone=True), nullable=True)

    is_revoked = db.Column(db.Boolean, nullable=False, default=False)
    revoked_at = db.Column(db.DateTime(timezone=True), nullable=True)
    revoked_reason = db.Column(db.String(255), nullable=True)

    user_agent = db.Column(db.String(255), nullable=True)
    ip_address = db.Column(db.String(64), nullable=True)

    user = db.relationship("User", backref=db.backref("sessions", lazy=True))
