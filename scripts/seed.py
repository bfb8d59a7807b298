"""Database seeder for local development and benchmark runs."""
import asyncio
import argparse
import random
import time
from datetime import datetime, timezone, timedelta

from sqlalchemy import insert, select

from app.database import engine, async_session, Base
from app.models import Category, Post, Tag, User, post_likes
from app.services import counter_service
from app.services.post_service import reading_time, slugify

CATEGORIES = {
    "Engineering": "Backend, infrastructure and tooling",
    "Data": "Databases, pipelines and analytics",
    "Frontend": "Browsers, UI frameworks and design systems",
    "Career": "Hiring, growth and team practices",
    "Archive": "Retired series kept for reference",
}

TAGS = ["python", "fastapi", "postgresql", "redis", "docker", "kubernetes",
        "react", "typescript", "aws", "devops", "testing", "performance",
        "security", "microservices", "graphql", "rest-api"]

STATUS_WEIGHTS = {"published": 0.8, "draft": 0.15, "archived": 0.05}


async def seed(small: bool = False):
    num_users = 10 if small else 50
    num_posts = 100 if small else 10000

    print(f"Seeding: {len(CATEGORIES)} categories, {num_users} users, {num_posts} posts")
    start = time.perf_counter()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    async with async_session() as session:
        for name, description in CATEGORIES.items():
            session.add(Category(
                name=name,
                slug=slugify(name),
                description=description,
                is_active=name != "Archive",
            ))

        tags = [Tag(name=name) for name in TAGS]
        session.add_all(tags)

        users = []
        for i in range(num_users):
            user = User(
                username=f"user_{i:04d}",
                email=f"user_{i:04d}@example.com",
                display_name=f"User {i}",
                bio=f"I am test user number {i}. I write about technology.",
                role="admin" if i == 0 else ("editor" if i < num_users // 5 else "reader"),
            )
            session.add(user)
            users.append(user)
        await session.flush()
        authors = [u for u in users if u.role != "reader"]
        print(f"  Created {len(CATEGORIES)} categories, {len(tags)} tags, {len(users)} users")

        # Posts in batches
        batch_size = 500
        categories = list(CATEGORIES)
        statuses, weights = zip(*STATUS_WEIGHTS.items())
        for batch_start in range(0, num_posts, batch_size):
            batch_end = min(batch_start + batch_size, num_posts)
            for i in range(batch_start, batch_end):
                created = datetime.now(timezone.utc) - timedelta(days=random.randint(0, 365))
                topic = random.choice(TAGS)
                status = random.choices(statuses, weights)[0]
                body = f"This is the full content of post {i} about {topic}. " * random.randint(10, 400)
                post = Post(
                    title=f"Post {i}: How to optimize {topic} applications",
                    slug=f"post-{i}-optimize-{topic}",
                    body=body,
                    excerpt=f"A guide to optimizing {topic} applications for production.",
                    keywords=f"{topic},optimization",
                    category=random.choice(categories),
                    status=status,
                    featured=random.random() < 0.05,
                    view_count=random.randint(0, 10000),
                    reading_time=reading_time(body),
                    published_at=created if status == "published" else None,
                    created_at=created,
                    author_id=random.choice(authors).id,
                )
                post.tags = random.sample(tags, k=random.randint(1, 4))
                session.add(post)
            await session.flush()
            print(f"  Batch {batch_start}-{batch_end}: posts created")

        # Likes on a sample of posts
        post_ids = (await session.execute(select(Post.id))).scalars().all()
        rows = []
        for post_id in random.sample(post_ids, k=len(post_ids) // 3):
            for user in random.sample(users, k=random.randint(1, min(5, len(users)))):
                rows.append({"post_id": post_id, "user_id": user.id, "created_at": datetime.now(timezone.utc)})
        if rows:
            await session.execute(insert(post_likes), rows)
        print(f"  Created {len(rows)} likes")

        # Posts were inserted directly, so the counters start from ground truth.
        counts = await counter_service.reconcile_all(session)
        await session.commit()

    elapsed = time.perf_counter() - start
    print(f"\nSeeding complete in {elapsed:.1f}s")
    for name, count in counts.items():
        print(f"  {name}: {count} published posts")


def main():
    parser = argparse.ArgumentParser(description="Seed the blog database")
    parser.add_argument("--small", action="store_true", help="Use small dataset (100 posts)")
    args = parser.parse_args()
    asyncio.run(seed(small=args.small))


if __name__ == "__main__":
    main()
