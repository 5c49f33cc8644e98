"""Seed a small demo data set.

One driver (capacity 3) and two riders opt in for tomorrow:
D 08:30-09:30, R1 08:30-09:30, R2 09:00-10:00. Matching groups all three
(R1 overlaps the driver by 60 minutes, R2 by 30). A handful of random
riders with weekday schedules are added around the same neighbourhood.
Run: python sample_data.py
"""
from datetime import time, timedelta
import random

from config import get_settings
from db import init_db, get_session, utc_now
from models import ScheduledOptIn, User, UserRole
import store

CENTER = (12.9716, 77.5946)


def _user(session, name, role=UserRole.RIDER, capacity=None, chat_id=None):
    u = User(name=name, role=role, capacity=capacity, telegram_chat_id=chat_id)
    session.add(u)
    session.flush()
    lat = CENTER[0] + (random.random() - 0.5) * 0.05
    lng = CENTER[1] + (random.random() - 0.5) * 0.05
    store.add_pickup_location(session, u.id, f"{name} home", lat, lng)
    return u


def seed():
    init_db()
    config = get_settings()
    tomorrow = utc_now().date() + timedelta(days=1)
    with get_session() as session:
        d = _user(session, "Driver D", UserRole.DRIVER, capacity=3, chat_id=1001)
        r1 = _user(session, "Rider R1", chat_id=1002)
        r2 = _user(session, "Rider R2", chat_id=1003)
        store.create_opt_in(session, config, d.id, tomorrow, time(8, 30), time(9, 30))
        store.create_opt_in(session, config, r1.id, tomorrow, time(8, 30), time(9, 30))
        store.create_opt_in(session, config, r2.id, tomorrow, time(9, 0), time(10, 0))

        for i in range(1, 11):
            u = _user(session, f"user{i}")
            loc = store.default_pickup_location(session, u.id)
            session.add(ScheduledOptIn(
                user_id=u.id,
                day_of_week=random.randrange(0, 5),
                start_time=time(random.choice([7, 8, 9]), random.choice([0, 30])),
                pickup_location_id=loc.id,
            ))
        session.commit()
    print(f"Seeded sample data for {tomorrow}")


if __name__ == "__main__":
    seed()
