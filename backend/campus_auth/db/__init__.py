from campus_auth.db.session import async_session_maker, get_db, init_db
from campus_auth.db.base import Base

__all__ = ["Base", "async_session_maker", "get_db", "init_db"]
