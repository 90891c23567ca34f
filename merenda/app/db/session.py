from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import sessionmaker

from merenda.app.config import get_settings


def make_engine(url: str, **kwargs) -> Engine:
    if make_url(url).get_backend_name() == "sqlite":
        # sessions ouvertes par le threadpool FastAPI : connexions partagées entre threads
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    engine = create_engine(url, **kwargs)

    if engine.dialect.name == "sqlite":
        # SQLite ignore les FK (et donc ON DELETE SET NULL) sans ce pragma
        @event.listens_for(engine, "connect")
        def _enable_sqlite_fk(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def make_sessionmaker(bind: Engine) -> sessionmaker:
    # expire_on_commit=False : les services rendent des objets lisibles après commit
    return sessionmaker(bind=bind, autoflush=False, expire_on_commit=False)


settings = get_settings()

engine = make_engine(settings.DATABASE_URL, pool_pre_ping=settings.DB_POOL_PRE_PING)
SessionLocal = make_sessionmaker(engine)
