"""Database seeder: demo accounts, posts, comments and votes."""
import argparse
import asyncio
import random
import time

from sqlalchemy import select

from forum_api.database import engine, async_session, Base
from forum_api.models import Comment, Post, Tag, User, UserRole
from forum_api.security import hash_password
from forum_api.services import vote_service
from forum_api.services.user_service import avatar_url
from forum_api.services.vote_service import TargetKind, VoteChoice

TAGS = ["announcement", "welcome", "guide", "education", "algorithms", "databases",
        "python", "exams", "scholarship", "clubs", "internships", "research"]

DEMO_ACCOUNTS = [
    ("admin", "admin@university.edu", "admin123", "Forum Administrator", UserRole.ADMIN),
    ("teacher1", "teacher@university.edu", "teacher123", "Nguyen Van A", UserRole.TEACHER),
    ("student1", "student@university.edu", "student123", "Tran Thi B", UserRole.STUDENT),
]


async def seed(small: bool = False):
    num_students = 10 if small else 200
    num_posts = 20 if small else 2000
    max_comments = 3 if small else 8

    print(f"Seeding: {num_students} extra students, {num_posts} posts")
    start = time.perf_counter()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    async with async_session() as session:
        tags = [Tag(name=name) for name in TAGS]
        session.add_all(tags)

        users = []
        for username, email, password, full_name, role in DEMO_ACCOUNTS:
            users.append(User(
                username=username, email=email, password_hash=hash_password(password),
                full_name=full_name, role=role, avatar=avatar_url(full_name),
            ))
        # One shared hash keeps seeding fast; bcrypt is deliberately slow.
        student_hash = hash_password("student123")
        for i in range(num_students):
            full_name = f"Student {i:04d}"
            users.append(User(
                username=f"student_{i:04d}", email=f"student_{i:04d}@university.edu",
                password_hash=student_hash, full_name=full_name,
                role=UserRole.STUDENT, avatar=avatar_url(full_name),
            ))
        session.add_all(users)
        await session.flush()
        print(f"  Created {len(users)} users, {len(tags)} tags")

        authors = [u for u in users if u.role is not UserRole.STUDENT] + users[:10]
        for i in range(num_posts):
            post = Post(
                title=f"Discussion {i}: questions about {random.choice(TAGS)}",
                content=f"<p>Thread {i}. Share what you know and ask what you don't.</p>",
                author_id=random.choice(authors).id,
            )
            post.tags.extend(random.sample(tags, k=random.randint(1, 3)))
            session.add(post)
        await session.flush()

        post_ids = (await session.execute(select(Post.id))).scalars().all()
        for post_id in post_ids:
            for _ in range(random.randint(0, max_comments)):
                session.add(Comment(
                    content="Thanks, this helped me prepare.",
                    post_id=post_id,
                    author_id=random.choice(users).id,
                ))
        await session.commit()
        print(f"  Created {len(post_ids)} posts with comments")

        # Votes go through the real protocol so every tally is earned.
        comment_ids = (await session.execute(select(Comment.id))).scalars().all()
        cast = 0
        for voter in random.sample(users, k=min(len(users), 30)):
            for post_id in random.sample(post_ids, k=min(len(post_ids), 10)):
                choice = random.choice([VoteChoice.UP, VoteChoice.UP, VoteChoice.DOWN])
                await vote_service.vote(session, voter.id, post_id, TargetKind.POST, choice)
                cast += 1
            for comment_id in random.sample(comment_ids, k=min(len(comment_ids), 5)):
                await vote_service.vote(
                    session, voter.id, comment_id, TargetKind.COMMENT, VoteChoice.UP
                )
                cast += 1

        report = await vote_service.reconcile_all(session)

    elapsed = time.perf_counter() - start
    print(f"\nSeeding complete in {elapsed:.1f}s")
    print(f"  Votes cast: {cast} (drifted after reconcile: {report})")
    print("Demo accounts:")
    for _, email, password, _, role in DEMO_ACCOUNTS:
        print(f"  {role.value:<8} {email} / {password}")


def main():
    parser = argparse.ArgumentParser(description="Seed the forum database")
    parser.add_argument("--small", action="store_true", help="Use a small dataset (20 posts)")
    args = parser.parse_args()
    asyncio.run(seed(small=args.small))


if __name__ == "__main__":
    main()
