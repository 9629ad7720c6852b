from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from src.domain.state_machine import EventStatus, EventVisibility
from src.infrastructure.db.models import Base, Event, User
from src.infrastructure.db.session import SessionLocal, engine


def _dt(days_from_now: int, hour: int, minute: int) -> datetime:
    ist = timezone(timedelta(hours=5, minutes=30))
    now_ist = datetime.now(ist)
    target = now_ist + timedelta(days=days_from_now)
    return target.replace(hour=hour, minute=minute, second=0, microsecond=0)


def seed_users(db) -> None:
    user_defs = [
        {"name": "Asha Verma", "email": "asha@example.com", "phone": "9000000001", "role": "attendee"},
        {"name": "Rohan Iyer", "email": "rohan@example.com", "phone": "9000000002", "role": "attendee"},
        {"name": "Gate Staff", "email": "gate@example.com", "phone": "9000000003", "role": "organizer"},
    ]

    for item in user_defs:
        existing = db.execute(
            select(User).where(User.email == item["email"])
        ).scalar_one_or_none()
        if existing:
            existing.name = item["name"]
            existing.phone = item["phone"]
            existing.role = item["role"]
            continue
        db.add(User(**item))


def seed_events(db) -> None:
    event_defs = [
        {
            "title": "Sunidhi Chauhan Live Concert",
            "venue": "Indira Gandhi Arena, New Delhi",
            "start_time": _dt(days_from_now=10, hour=19, minute=30),
            "end_time": _dt(days_from_now=10, hour=22, minute=30),
            "price": 1800,
            "capacity": 400,
        },
        {
            "title": "Holi Festival 2026",
            "venue": "Jawaharlal Nehru Stadium Grounds, Delhi",
            "start_time": _dt(days_from_now=15, hour=11, minute=0),
            "end_time": _dt(days_from_now=15, hour=18, minute=0),
            "price": 1200,
            "capacity": 700,
        },
        {
            "title": "Founders Breakfast",
            "venue": "Hotel Star, Bengaluru",
            "start_time": _dt(days_from_now=3, hour=8, minute=0),
            "end_time": None,
            "price": 500,
            "capacity": 2,
        },
    ]

    for item in event_defs:
        existing = db.execute(
            select(Event).where(Event.title == item["title"])
        ).scalar_one_or_none()
        if existing:
            # Only the schedule and price move; seats already sold stay counted.
            existing.venue = item["venue"]
            existing.start_time = item["start_time"]
            existing.end_time = item["end_time"]
            existing.price = item["price"]
            existing.capacity = max(item["capacity"], existing.sold)
            continue

        db.add(
            Event(
                **item,
                sold=0,
                status=EventStatus.PUBLISHED,
                visibility=EventVisibility.PUBLIC,
            )
        )


def main() -> None:
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        seed_users(db)
        seed_events(db)
        db.commit()
        print("Seed complete: 3 users (1 staff), Sunidhi concert, Holi festival, Founders breakfast added.")
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    main()
