import asyncio
import sqlalchemy as sa

from .common.database import init_db, AsyncSessionLocal
from .orders.model import Book


def _pages(seed: str, count: int):
    return [f"https://picsum.photos/seed/{seed}-{n}/595/842" for n in range(1, count + 1)]


SAMPLE_BOOKS = [
    {
        "title": "The Brave Little Explorer",
        "description": "A young explorer maps a hidden valley.",
        "genre": "adventure",
        "age_range": "4-8",
        "cover_image_url": "https://picsum.photos/seed/explorer/595/842",
        "images": _pages("explorer", 6),
        "characters": "explorer, fox",
        "ideal_for": "bedtime",
    },
    {
        "title": "Space Pirates of Planet Nine",
        "description": "A cadet outsmarts a crew of friendly pirates.",
        "genre": "sci-fi",
        "age_range": "6-10",
        "cover_image_url": "https://picsum.photos/seed/pirates/595/842",
        "images": _pages("pirates", 8),
        "characters": "cadet, captain, robot",
        "ideal_for": "gifts",
    },
    {
        "title": "My Garden Friends",
        "description": "Counting bugs and flowers through the seasons.",
        "genre": "early learning",
        "age_range": "2-5",
        "cover_image_url": "https://picsum.photos/seed/garden/595/842",
        "images": _pages("garden", 5),
        "characters": "gardener, ladybug",
        "ideal_for": "first readers",
    },
]


async def seed_books() -> None:
    await init_db()
    async with AsyncSessionLocal() as session:
        added = 0
        for b in SAMPLE_BOOKS:
            # avoid duplicates by title
            res = await session.execute(sa.select(Book.id).where(Book.title == b["title"]))
            if res.first():
                continue
            session.add(Book(**b))
            added += 1
        if added:
            await session.commit()
        print(f"Seed complete. Added {added} books.")


async def amain():
    await seed_books()


if __name__ == "__main__":
    asyncio.run(amain())
