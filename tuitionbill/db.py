import os
from typing import Optional

from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from tuitionbill.config import cfg
from tuitionbill.log import get_logger
from tuitionbill.events import log_event, E
from tuitionbill.models.base import Base

logger = get_logger(__name__)


class Database:
    def __init__(self, url: Optional[str] = None, echo: bool = False):
        self.url = url or cfg.get("db", "sqlite:///data/tuitionbill.db")
        connect_args = {}
        if self.url.startswith("sqlite"):
            self._ensure_sqlite_dir()
            connect_args = {"check_same_thread": False, "timeout": 30}
        self.engine = create_engine(self.url, echo=echo, future=True, connect_args=connect_args)
        if self.url.startswith("sqlite"):
            event.listen(self.engine, "connect", _sqlite_pragmas)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False, future=True)

    def _ensure_sqlite_dir(self) -> None:
        path = self.url.split("///", 1)[-1]
        if path and path != ":memory:":
            folder = os.path.dirname(path)
            if folder:
                os.makedirs(folder, exist_ok=True)

    def get_session(self):
        return self._session_factory()

    def create_tables(self) -> None:
        # the model modules must be imported before create_all sees the tables
        import tuitionbill.models  # noqa: F401

        Base.metadata.create_all(self.engine)
        log_event(logger, E.SYSTEM_DB_INIT, url=self.url.split("@")[-1])

    def drop_tables(self) -> None:
        import tuitionbill.models  # noqa: F401

        Base.metadata.drop_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()


def _sqlite_pragmas(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA busy_timeout=30000")
    cursor.close()


DB = Database()
