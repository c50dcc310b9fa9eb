"""Flask extensions: single instances shared across the application."""

from contextlib import contextmanager

from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
limiter = Limiter(get_remote_address, storage_uri="memory://")


@contextmanager
def atomic():
    """Run the enclosed block as one unit of work.

    The outermost block commits on success and rolls back on any exception;
    nested blocks join the outer unit so a subscription/invoice/payment
    triple is written together or not at all.
    """
    info = db.session.info
    depth = info.get("atomic_depth", 0)
    info["atomic_depth"] = depth + 1
    try:
        yield db.session
        if depth == 0:
            db.session.commit()
    except Exception:
        if depth == 0:
            db.session.rollback()
        raise
    finally:
        info["atomic_depth"] = depth
