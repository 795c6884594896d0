from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from platformdirs import user_data_dir
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from batchkeeper.db.models import Base

APP_NAME = "batchkeeper"
APP_AUTHOR = "batchkeeper"


def default_database_url() -> str:
    db_file_path = Path(user_data_dir(APP_NAME, APP_AUTHOR)) / f"{APP_NAME}.db"
    db_file_path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{db_file_path}"


class Database:
    """
    Engine and session factory for one store.

    Parameters
    ----------
    url : str | None
        SQLAlchemy URL. Defaults to a SQLite file in the user data directory.
        ``sqlite://`` gives a single shared in-memory database.
    echo : bool
        Whether to log emitted SQL.
    """

    def __init__(self, url: str | None = None, *, echo: bool = False) -> None:
        self.url = url or default_database_url()
        engine_kwargs: dict = {"echo": echo, "future": True}
        if self.url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if self.url in {"sqlite://", "sqlite:///:memory:"}:
                engine_kwargs["poolclass"] = StaticPool
        self.engine = create_engine(self.url, **engine_kwargs)
        self._session_factory = sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=self.engine,
            class_=Session,
        )

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        db = self._session_factory()
        try:
            yield db
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def init_db(self) -> None:
        Base.metadata.create_all(bind=self.engine)

    def destroy_db(self) -> None:
        Base.metadata.drop_all(bind=self.engine)

    def dispose(self) -> None:
        self.engine.dispose()
