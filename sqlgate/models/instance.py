"""
SQLGate: SQL change-order platform
Target database configuration models.

Models:
    - DBEnvironment: named environment grouping (prod, staging, ...)
    - DBInstance: one target database server orders run against
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy.engine import URL

from sqlgate.models import db
from sqlgate.models.soft_delete import SoftDeleteMixin
from sqlgate.utils.crypto import decrypt_secret, encrypt_secret

DB_TYPES = {"MySQL", "TiDB", "SQLite"}
USE_TYPES = {"ORDER", "QUERY"}

_DRIVERS = {
    "MySQL": "mysql+pymysql",
    "TiDB": "mysql+pymysql",
}


def _now():
    return datetime.now(timezone.utc)


class DBEnvironment(SoftDeleteMixin, db.Model):
    __tablename__ = "db_environments"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(64), nullable=False, unique=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=_now, onupdate=_now)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class DBInstance(SoftDeleteMixin, db.Model):
    """
    A target database server.

    For SQLite targets ``hostname`` holds the database file path; port and
    credentials are ignored.
    """

    __tablename__ = "db_instances"

    instance_id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    remark = db.Column(db.String(255), default="")
    db_type = db.Column(db.String(20), nullable=False, default="MySQL")
    use_type = db.Column(db.String(10), nullable=False, default="ORDER",
                         comment="ORDER (change orders) or QUERY (ad-hoc queries)")
    environment_id = db.Column(db.Integer, db.ForeignKey("db_environments.id"), nullable=True)
    hostname = db.Column(db.String(255), nullable=False)
    port = db.Column(db.Integer, default=3306)
    username = db.Column(db.String(128), default="")
    password_encrypted = db.Column(db.Text, default="")
    inspect_params = db.Column(db.JSON, default=dict,
                               comment="Per-instance overrides for the audit rules")

    created_at = db.Column(db.DateTime(timezone=True), default=_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=_now, onupdate=_now)

    environment = db.relationship("DBEnvironment", lazy="joined")

    def set_password(self, plaintext: str | None) -> None:
        self.password_encrypted = encrypt_secret(plaintext) if plaintext else ""

    @property
    def password(self) -> str:
        if not self.password_encrypted:
            return ""
        return decrypt_secret(self.password_encrypted)

    def connection_url(self, schema: str | None = None):
        """Build the SQLAlchemy URL used to reach this instance."""
        if self.db_type == "SQLite":
            return URL.create("sqlite", database=self.hostname)
        return URL.create(
            _DRIVERS[self.db_type],
            username=self.username or None,
            password=self.password or None,
            host=self.hostname,
            port=self.port,
            database=schema or None,
            query={"charset": "utf8mb4"},
        )

    def to_dict(self):
        return {
            "instance_id": self.instance_id,
            "remark": self.remark,
            "db_type": self.db_type,
            "use_type": self.use_type,
            "environment_id": self.environment_id,
            "environment": self.environment.name if self.environment else None,
            "hostname": self.hostname,
            "port": self.port,
            "username": self.username,
            "inspect_params": self.inspect_params or {},
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<DBInstance {self.instance_id} {self.db_type} {self.hostname}:{self.port}>"
