from sqlmodel import SQLModel, create_engine, Session
from .settings import settings

_connect_args = {"check_same_thread": False} if settings.database_url.startswith("sqlite") else {}
engine = create_engine(settings.database_url, pool_pre_ping=True, connect_args=_connect_args)

def init_db(bind=None):
    SQLModel.metadata.create_all(bind or engine)

def get_session(bind=None):
    # reads after commit stay usable once the session is closed
    return Session(bind or engine, expire_on_commit=False)
