"""
Seed script -- populates the database with sample data for reviewers.

Run after migrations:
    python seed.py

Creates:
  - 10 sample users
  - 10 ride requests from Mumbai airport, submitted through the coordinator
    so they are matched into pools exactly as live traffic would be
"""

import asyncio

from sqlalchemy import func, select

from ridepool.bootstrap import build_services
from ridepool.config import settings
from ridepool.domain.entities import Coordinate, NewRideRequest
from ridepool.infrastructure.models import UserModel
from ridepool.infrastructure.repositories import UserRepository

# Mumbai airport coordinates (approx)
AIRPORT = Coordinate(19.0896, 72.8656)

USERS = [
    ("Aarav Sharma", "aarav@example.com"),
    ("Priya Patel", "priya@example.com"),
    ("Rohan Mehta", "rohan@example.com"),
    ("Sneha Gupta", "sneha@example.com"),
    ("Vikram Singh", "vikram@example.com"),
    ("Ananya Reddy", "ananya@example.com"),
    ("Karan Joshi", "karan@example.com"),
    ("Meera Nair", "meera@example.com"),
    ("Arjun Kumar", "arjun@example.com"),
    ("Diya Iyer", "diya@example.com"),
]

# (pickup offset from the terminal, dropoff, passengers, luggage)
RIDES = [
    ((0.0000, 0.0000), (19.0760, 72.8777), 1, 1),  # Andheri
    ((-0.0006, -0.0006), (19.0730, 72.8800), 1, 1),  # Andheri East
    ((0.0004, 0.0004), (19.1176, 72.9060), 1, 1),  # Powai
    ((-0.0001, -0.0001), (19.1136, 72.9000), 1, 1),  # near Powai
    ((-0.0004, -0.0004), (19.1200, 72.9100), 1, 1),  # IIT Bombay
    ((-0.0008, -0.0008), (19.0540, 72.8400), 2, 2),  # Bandra
    ((0.0006, 0.0006), (19.0600, 72.8500), 1, 1),  # Santacruz
    ((0.0000, 0.0000), (19.0200, 72.8500), 1, 0),  # Dadar
    ((0.0002, -0.0002), (19.2183, 72.9781), 2, 3),  # Thane
    ((-0.0003, 0.0003), (18.9220, 72.8347), 1, 2),  # Colaba
]


async def seed() -> None:
    services = build_services(settings)
    try:
        async with services.session_factory() as session:
            # Check if already seeded
            count = await session.scalar(select(func.count()).select_from(UserModel))
            if count:
                print("Database already seeded. Skipping.")
                return

            users = UserRepository(session)
            user_ids = [(await users.create(name, email)).id for name, email in USERS]
            await session.commit()
        print(f"  Created {len(user_ids)} users")

        for user_id, (offset, dropoff, passengers, luggage) in zip(user_ids, RIDES):
            outcome = await services.coordinator.submit(
                NewRideRequest(
                    user_id=user_id,
                    pickup=Coordinate(
                        AIRPORT.latitude + offset[0], AIRPORT.longitude + offset[1]
                    ),
                    dropoff=Coordinate(*dropoff),
                    passenger_count=passengers,
                    luggage_count=luggage,
                )
            )
            pool = outcome.pool.pool_code if outcome.pool else "-"
            print(f"  Ride {outcome.request.id}: {outcome.outcome.value} ({pool})")

        print("\nSeed complete!")
    finally:
        await services.close()


async def main():
    print("Seeding database...")
    await seed()


if __name__ == "__main__":
    asyncio.run(main())
