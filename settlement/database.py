import json
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from settlement.config import DATABASE_URL


def _json_dumps(value):
    # Decimal amounts and datetimes end up in metadata/audit payloads
    return json.dumps(value, default=str)


def make_engine(url):
    return create_engine(
        url,
        json_serializer=_json_dumps,
        connect_args={"check_same_thread": False} if url.startswith("sqlite") else {}
    )


engine = make_engine(DATABASE_URL)

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
Base = declarative_base()
