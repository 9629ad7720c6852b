import logging

from src.application.reaper_service import ReaperService
from src.infrastructure.db.session import get_db_session


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    with get_db_session() as db:
        result = ReaperService(db).sweep()
    print(
        f"Sweep complete: released {result.released_count} booking(s), "
        f"{result.released_seats} seat(s)."
    )


if __name__ == "__main__":
    main()
