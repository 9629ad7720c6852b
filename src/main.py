import logging
import time

from fastapi import FastAPI
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from src import config
from src.api.routes.routes import router
from src.application.reaper_service import ReaperRunner
from src.infrastructure.db.models import Base
from src.infrastructure.db.session import engine

logger = logging.getLogger(__name__)

app = FastAPI(title="Box Office Reconciliation Engine")
app.include_router(router)


def _wait_for_db(
    attempts: int = config.DB_CONNECT_MAX_RETRIES,
    delay: float = config.DB_CONNECT_RETRY_DELAY,
) -> None:
    """Block until the database answers ``SELECT 1`` or attempts run out."""
    for attempt in range(1, attempts + 1):
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except OperationalError:
            if attempt == attempts:
                logger.exception("Database unreachable after %s attempts", attempts)
                raise
            logger.warning("Database not ready (%s/%s), retrying in %.1fs", attempt, attempts, delay)
            time.sleep(delay)
        else:
            return


@app.on_event("startup")
def start_engine() -> None:
    _wait_for_db()
    Base.metadata.create_all(bind=engine)

    if config.REAPER_ENABLED:
        app.state.reaper = ReaperRunner(interval_seconds=config.REAPER_INTERVAL_SECONDS)
        app.state.reaper.start()
        logger.info("Reaper started, interval %.0fs", config.REAPER_INTERVAL_SECONDS)


@app.on_event("shutdown")
def stop_engine() -> None:
    reaper = getattr(app.state, "reaper", None)
    if reaper is not None:
        reaper.stop()
