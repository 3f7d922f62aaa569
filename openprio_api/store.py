"""Database access for MQTT accounts, ACLs and vehicle pre-registrations."""

from __future__ import annotations

import contextlib
from datetime import datetime

import bcrypt
from sqlalchemy import (
    Column,
    DateTime,
    MetaData,
    Table,
    Text,
    create_engine,
    delete,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

# pgcrypto's gen_salt('bf') uses 6 rounds by default.
BCRYPT_ROUNDS = 6
# bcrypt only looks at the first 72 bytes of a secret.
_BCRYPT_MAX_BYTES = 72

metadata = MetaData()

vehicle_pre_registration = Table(
    "vehicle_pre_registration",
    metadata,
    Column("data_owner_code", Text, nullable=False),
    Column("vehicle_number", Text, nullable=False),
    Column("token", Text, nullable=False),
    Column("created_at", DateTime, nullable=False),
    Column("used_at", DateTime, nullable=True),
)

mqtt_user = Table(
    "mqtt_user",
    metadata,
    Column("username", Text, nullable=False),
    Column("password_hash", Text, nullable=False),
)

mqtt_acl = Table(
    "mqtt_acl",
    metadata,
    Column("username", Text, nullable=False),
    Column("clientid", Text, nullable=False),
    Column("action", Text, nullable=False),
    Column("permission", Text, nullable=False),
    Column("topic", Text, nullable=False),
)

PRIMARY_ACL = (
    ("subscribe", "/prod/pt/ssm/+/vehicle_number/+"),
    ("subscribe", "/test/pt/ssm/+/vehicle_number/+"),
    ("publish", "/prod/pt/position/+/vehicle_number/+"),
    ("publish", "/test/pt/position/+/vehicle_number/+"),
)

SECONDARY_FEED_ACL = (
    ("publish", "/prod/pt/position-secondary/+/vehicle_number/+"),
    ("publish", "/test/pt/position-secondary/+/vehicle_number/+"),
)


def _secret(token: str) -> bytes:
    return token.encode("utf-8")[:_BCRYPT_MAX_BYTES]


def hash_secret(token: str) -> str:
    """Return a bcrypt hash of ``token``."""
    return bcrypt.hashpw(_secret(token), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("ascii")


def verify_secret(token: str, hashed: str) -> bool:
    """Return whether ``token`` matches the bcrypt hash ``hashed``."""
    try:
        return bcrypt.checkpw(_secret(token), hashed.encode("ascii"))
    except ValueError:
        return False


class Store:
    """Persistent storage backed by an SQLAlchemy engine."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._dummy_hash = hash_secret("")

    @classmethod
    def from_url(cls, url: str) -> "Store":
        """Open a store for the database at ``url``."""
        return cls(create_engine(url))

    def create_schema(self) -> None:
        """Create the tables used by the store if they do not exist."""
        metadata.create_all(self.engine)

    def is_vehicle_pre_registered(self, data_owner_code: str, vehicle_number: str) -> bool:
        """Return whether a pre-registration exists for the vehicle."""
        query = (
            select(vehicle_pre_registration.c.vehicle_number)
            .where(
                vehicle_pre_registration.c.data_owner_code == data_owner_code,
                vehicle_pre_registration.c.vehicle_number == vehicle_number,
            )
            .limit(1)
        )
        with self.engine.connect() as conn:
            return conn.execute(query).first() is not None

    def pre_register_vehicle(
        self,
        data_owner_code: str,
        vehicle_number: str,
        token: str,
        created_at: datetime,
    ) -> None:
        """Store a pre-registration; only a hash of ``token`` is kept."""
        with self.engine.begin() as conn:
            conn.execute(
                insert(vehicle_pre_registration).values(
                    data_owner_code=data_owner_code,
                    vehicle_number=vehicle_number,
                    token=hash_secret(token),
                    created_at=created_at,
                )
            )

    def delete_account(self, username: str) -> None:
        """Remove every MQTT account with this username."""
        with self.engine.begin() as conn:
            conn.execute(delete(mqtt_user).where(mqtt_user.c.username == username))

    def save_account(self, username: str, token: str) -> None:
        """Create an MQTT account whose password is ``token``."""
        with self.engine.begin() as conn:
            conn.execute(
                insert(mqtt_user).values(username=username, password_hash=hash_secret(token))
            )

    def _insert_acl(self, username: str, action: str, topic: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                insert(mqtt_acl).values(
                    username=username,
                    clientid=username,
                    action=action,
                    permission="allow",
                    topic=topic,
                )
            )

    def save_acl(self, username: str, allow_secondary_feed: bool) -> None:
        """Grant the standard topic permissions to ``username``.

        Only a failure of the first grant is raised; later grants are best effort.
        """
        entries = list(PRIMARY_ACL)
        if allow_secondary_feed:
            entries.extend(SECONDARY_FEED_ACL)
        (first_action, first_topic), *rest = entries
        self._insert_acl(username, first_action, first_topic)
        for action, topic in rest:
            with contextlib.suppress(SQLAlchemyError):
                self._insert_acl(username, action, topic)

    def check_token(self, data_owner_code: str, vehicle_number: str, token: str) -> bool:
        """Return whether ``token`` matches an unused pre-registration of the vehicle."""
        query = (
            select(vehicle_pre_registration.c.token)
            .where(
                vehicle_pre_registration.c.data_owner_code == data_owner_code,
                vehicle_pre_registration.c.vehicle_number == vehicle_number,
                vehicle_pre_registration.c.used_at.is_(None),
            )
            .limit(1)
        )
        with self.engine.connect() as conn:
            row = conn.execute(query).first()
        if row is None:
            # Hash anyway so unknown vehicles take as long as wrong tokens.
            verify_secret(token, self._dummy_hash)
            return False
        return verify_secret(token, row.token)

    def set_pre_registration_used(self, data_owner_code: str, vehicle_number: str) -> None:
        """Mark the vehicle's pre-registrations as used now."""
        with self.engine.begin() as conn:
            conn.execute(
                update(vehicle_pre_registration)
                .where(
                    vehicle_pre_registration.c.data_owner_code == data_owner_code,
                    vehicle_pre_registration.c.vehicle_number == vehicle_number,
                )
                .values(used_at=func.now())
            )