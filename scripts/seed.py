"""Database seeder for local development and cache benchmarking."""
import asyncio
import argparse
import random
import time
from datetime import datetime, timezone, timedelta
from sqlalchemy import insert
from app.database import engine, async_session, Base
from app.models import Post, PostStatus, User, UserRole, post_likes

TAGS = ["python", "fastapi", "postgresql", "redis", "docker", "kubernetes",
        "react", "typescript", "aws", "devops", "testing", "performance",
        "security", "microservices", "graphql", "rest-api"]

STATUS_WEIGHTS = {
    PostStatus.PUBLISHED: 0.7,
    PostStatus.DRAFT: 0.2,
    PostStatus.ARCHIVED: 0.1,
}

async def seed(small: bool = False):
    num_users = 10 if small else 200
    num_posts = 100 if small else 5000
    max_likes_per_post = 3 if small else 20

    print(f"Seeding: {num_users} users, {num_posts} posts, up to {max_likes_per_post} likes per post")
    start = time.perf_counter()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    async with async_session() as session:
        users = []
        for i in range(num_users):
            user = User(
                name=f"User {i}",
                email=f"user_{i:04d}@example.com",
                age=random.randint(18, 80),
                role=random.choice(list(UserRole)).value,
                is_active=random.random() > 0.05,
            )
            session.add(user)
            users.append(user)
        await session.flush()
        print(f"  Created {len(users)} users")

        statuses = list(STATUS_WEIGHTS)
        weights = list(STATUS_WEIGHTS.values())
        total_likes = 0
        batch_size = 500
        for batch_start in range(0, num_posts, batch_size):
            batch_end = min(batch_start + batch_size, num_posts)
            posts = []
            for i in range(batch_start, batch_end):
                created = datetime.now(timezone.utc) - timedelta(days=random.randint(0, 90))
                post = Post(
                    title=f"Post {i}: notes on {random.choice(TAGS)}",
                    content=f"This is the body of post {i}. " * 20,
                    author_id=random.choice(users).id,
                    tags=random.sample(TAGS, k=random.randint(1, 4)),
                    status=random.choices(statuses, weights)[0].value,
                    views=random.randint(0, 10000),
                    created_at=created,
                    updated_at=created,
                )
                session.add(post)
                posts.append(post)
            await session.flush()

            like_rows = []
            for post in posts:
                likers = random.sample(users, k=random.randint(0, max_likes_per_post))
                like_rows.extend({"post_id": post.id, "user_id": u.id} for u in likers)
            if like_rows:
                await session.execute(insert(post_likes), like_rows)
                total_likes += len(like_rows)

            print(f"  Batch {batch_start}-{batch_end}: posts created")

        await session.commit()

    elapsed = time.perf_counter() - start
    print(f"\nSeeding complete in {elapsed:.1f}s")
    print(f"  Users: {num_users}")
    print(f"  Posts: {num_posts}")
    print(f"  Likes: {total_likes}")


def main():
    parser = argparse.ArgumentParser(description="Seed the posts database")
    parser.add_argument("--small", action="store_true", help="Use small dataset (100 posts)")
    args = parser.parse_args()
    asyncio.run(seed(small=args.small))


if __name__ == "__main__":
    main()
