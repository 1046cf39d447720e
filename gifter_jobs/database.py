from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, DeclarativeBase
import os

# Allow overriding database via environment.
# Default is a lightweight local sqlite DB.
SQLALCHEMY_DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+pysqlite:///./gifter_jobs.db")


def build_engine(url: str):
	"""Create an engine; sqlite gets cross-thread access and FK enforcement."""
	if url.startswith("sqlite"):
		eng = create_engine(url, connect_args={"check_same_thread": False})

		@event.listens_for(eng, "connect")
		def _enable_sqlite_fks(dbapi_connection, connection_record):  # pragma: no cover - driver hook
			cursor = dbapi_connection.cursor()
			cursor.execute("PRAGMA foreign_keys=ON")
			cursor.close()

		return eng
	return create_engine(url, pool_pre_ping=True)


engine = build_engine(SQLALCHEMY_DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)

class Base(DeclarativeBase):
	pass
