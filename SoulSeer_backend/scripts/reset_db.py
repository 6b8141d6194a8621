import asyncio
import sys
from decimal import Decimal
from pathlib import Path


async def recreate_db():
    backend_root = Path(__file__).resolve().parents[1]
    # Ensure backend root on import path
    sys.path.insert(0, str(backend_root))

    from app.config import settings  # type: ignore
    db_path = Path(settings.DATABASE_PATH)
    if not db_path.is_absolute():
        db_path = backend_root / db_path
    if db_path.exists():
        db_path.unlink()

    from app.database import AsyncSessionLocal, create_tables  # type: ignore
    await create_tables()
    await seed(AsyncSessionLocal)


async def seed(session_factory):
    from models.reader import Reader  # type: ignore
    from models.user import User  # type: ignore

    async with session_factory() as db:
        db.add(User(id="admin", username="admin", email="admin@soulseer.local", role="admin", full_name="Admin"))
        db.add(User(id="client-1", username="luna", email="luna@example.com", full_name="Luna", balance=Decimal("50.00")))
        db.add(User(id="client-2", username="orion", email="orion@example.com", full_name="Orion", balance=Decimal("10.00")))
        readers = [
            ("reader-1", "Mystic Rose", True),
            ("reader-2", "Star Gazer", True),
            ("reader-3", "Tarot Tom", False),
        ]
        for user_id, name, online in readers:
            db.add(User(id=user_id, username=user_id, email=f"{user_id}@soulseer.local", role="reader", full_name=name))
            await db.flush()
            db.add(Reader(
                user_id=user_id,
                display_name=name,
                is_online=online,
                is_approved=True,
                chat_rate=Decimal("3.99"),
                voice_rate=Decimal("4.99"),
                video_rate=Decimal("5.99"),
            ))
        await db.commit()


if __name__ == '__main__':
    asyncio.run(recreate_db())
    print('Database recreated and demo accounts seeded.')
