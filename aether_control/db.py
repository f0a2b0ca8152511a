from sqlmodel import SQLModel, create_engine, Session
from .settings import settings

def _connect_args(url: str) -> dict:
    # sqlite connections are shared with the route threadpool
    return {"check_same_thread": False} if url.startswith("sqlite") else {}

engine = create_engine(
    settings.database_url,
    pool_pre_ping=True,
    connect_args=_connect_args(settings.database_url),
)

def init_db(bind=None):
    SQLModel.metadata.create_all(bind or engine)

def get_session(bind=None):
    # 👇 prevent attribute expiration so simple reads after commit are safe
    return Session(bind or engine, expire_on_commit=False)
