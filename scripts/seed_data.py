#!/usr/bin/env python3
"""
Seed script — creates a realistic dataset for exercising the ledger.

Creates:
  • 10 users (two of them private accounts)
  • 5 posts per user (50 total) with mixed visibility and industry tags
  • A follow graph (each user follows 4 others; private targets get requests)
  • Likes, comments and shares across posts

Users and posts are written straight to the record store, since profiles and
post creation live in other services. All engagement goes through the
ledger services, exactly as the API would drive it.

Run against the configured stores (see feedledger/config.py):
  python scripts/seed_data.py
  python scripts/seed_data.py --api-url http://localhost:8000   # for the printed curl hints

With SYNC_QUEUE_BACKEND=memory the sync jobs are drained before exiting;
with Kafka the sync workers pick them up.
"""
import argparse
import asyncio
import logging
import random
from datetime import timedelta

from feedledger.clients.sync_queue import InMemorySyncQueue
from feedledger.config import Settings
from feedledger.container import build_ledger
from feedledger.models import (
    ACCOUNT_PRIVATE,
    ACCOUNT_PUBLIC,
    VISIBILITY_FOLLOWERS,
    VISIBILITY_PUBLIC,
    Post,
    User,
    utcnow,
)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s — %(message)s",
)
logger = logging.getLogger("seed")

BASE_USERS = [
    ("alice_ai", "Alice Chen", ACCOUNT_PUBLIC, ["ai", "tech"]),
    ("bob_builder", "Bob Martinez", ACCOUNT_PUBLIC, ["construction"]),
    ("carol_codes", "Carol Singh", ACCOUNT_PRIVATE, ["tech"]),
    ("dave_designs", "Dave Kim", ACCOUNT_PUBLIC, ["design"]),
    ("eve_engineer", "Eve Johnson", ACCOUNT_PUBLIC, ["tech", "finance"]),
    ("frank_feeds", "Frank Williams", ACCOUNT_PUBLIC, ["media"]),
    ("grace_graphs", "Grace Li", ACCOUNT_PRIVATE, ["ai"]),
    ("henry_hpc", "Henry Brown", ACCOUNT_PUBLIC, ["tech"]),
    ("iris_infra", "Iris Davis", ACCOUNT_PUBLIC, ["finance"]),
    ("jack_ml", "Jack Wilson", ACCOUNT_PUBLIC, ["ai"]),
]

SAMPLE_POSTS = [
    "Just shipped a new feature to production 🚀 Zero downtime deploys are beautiful.",
    "TIL: Redis hashes make perfect live counters. HINCRBY is atomic per field.",
    "Apache Kafka consumer groups are a masterclass in distributed coordination.",
    "Write to the fast store, sync to the durable one, reconcile the rest.",
    "Idempotent consumers turn at-least-once delivery into exactly-once effects.",
    "Distributed SQL with TiDB — horizontal scaling without changing your SQL dialect.",
    "Content moderation at scale is a harder problem than the ranking model.",
    "FastAPI async endpoints are a joy. Concurrent DB + Redis + Kafka calls in parallel.",
    "Grafana dashboards are the first thing I build for any new service.",
    "Prometheus metrics: the difference between knowing and guessing in production.",
    "My Redis memory usage spiked 3x after forgetting to set TTLs on cached pages. 🤦",
    "The feed latency histogram shows p99 at 120ms. Time to look at the candidate query.",
]

SAMPLE_COMMENTS = [
    "Great point!",
    "We hit exactly this last quarter.",
    "Any write-up on how you measured it?",
    "Bookmarking this.",
    "Disagree slightly, but well argued.",
]


async def seed(settings: Settings, api_url: str) -> None:
    ledger = build_ledger(settings)
    await ledger.start()
    try:
        # ── Create users ─────────────────────────────────────────────────
        print("Creating users...")
        users: list[User] = []
        async with ledger.session_factory() as session:
            for username, display_name, account_type, industries in BASE_USERS:
                user = User(
                    username=username,
                    display_name=display_name,
                    account_type=account_type,
                    industries=industries,
                )
                session.add(user)
                users.append(user)
            await session.commit()
        for user in users:
            print(f"  ✓ {user.username} ({user.user_id}){' [private]' if user.is_private else ''}")

        # ── Create posts ─────────────────────────────────────────────────
        print("\nCreating posts...")
        posts: list[Post] = []
        pool = SAMPLE_POSTS * 5
        random.shuffle(pool)
        now = utcnow()
        async with ledger.session_factory() as session:
            for i, user in enumerate(users):
                for j in range(5):
                    post = Post(
                        user_id=user.user_id,
                        caption=pool[(i * 5 + j) % len(pool)],
                        industries=user.industries,
                        visibility=VISIBILITY_FOLLOWERS if j == 4 else VISIBILITY_PUBLIC,
                        created_at=now - timedelta(hours=random.randint(0, 72)),
                    )
                    session.add(post)
                    posts.append(post)
            await session.commit()
        print(f"  ✓ {len(posts)} posts created")

        # ── Create follow graph ──────────────────────────────────────────
        print("\nCreating follow relationships...")
        requests = 0
        for follower in users:
            others = [u for u in users if u.user_id != follower.user_id]
            for followee in random.sample(others, k=4):
                result = await ledger.follows.follow(follower.user_id, followee.user_id)
                if result.status == "pending":
                    requests += 1
        # Private accounts accept about half of their requests
        for user in users:
            if not user.is_private:
                continue
            pending = await ledger.follows.list_requests(user.user_id, limit=100)
            for requester in pending.data[: len(pending.data) // 2 + 1]:
                await ledger.follows.accept_request(user.user_id, requester["user_id"])
        print(f"  ✓ Follow graph created ({requests} requests to private accounts)")

        # ── Engagement ───────────────────────────────────────────────────
        print("\nAdding likes, comments and shares...")
        likes = comments = shares = 0
        for post in posts:
            for user in random.sample(users, k=random.randint(0, 5)):
                await ledger.likes.like(user.user_id, post.post_id)
                likes += 1
            for user in random.sample(users, k=random.randint(0, 2)):
                await ledger.comments.add_comment(
                    user.user_id, post.post_id, random.choice(SAMPLE_COMMENTS)
                )
                comments += 1
            if post.visibility == VISIBILITY_PUBLIC and random.random() < 0.3:
                sharer = random.choice(users)
                await ledger.shares.share(
                    sharer.user_id, post.post_id, "external", platform=random.choice(["twitter", "whatsapp"])
                )
                shares += 1
        print(f"  ✓ {likes} likes, {comments} comments, {shares} shares")

        if isinstance(ledger.queue, InMemorySyncQueue):
            processed = await ledger.runner.drain(ledger.queue)
            print(f"  ✓ {processed} sync jobs applied in-process")
    finally:
        await ledger.stop()

    # ── Print summary ────────────────────────────────────────────────────
    print("\n" + "=" * 60)
    print("Seed complete! Here are some commands to try:\n")
    u = users[0].user_id
    p = posts[0].post_id
    print(f"# Get the feed for user '{users[0].username}':")
    print(f"  curl -s -H 'X-User-Id: {u}' '{api_url}/feed?algorithm=hybrid' | python3 -m json.tool\n")
    print("# Like a post:")
    print(f"  curl -s -X POST -H 'X-User-Id: {u}' '{api_url}/posts/{p}/like' | python3 -m json.tool\n")
    print("# Trending in the last 24 hours:")
    print(f"  curl -s -H 'X-User-Id: {u}' '{api_url}/feed/trending' | python3 -m json.tool\n")
    print("# Check Jaeger traces: http://localhost:16686")
    print("# Check Prometheus: http://localhost:9090")
    print("# Check Grafana: http://localhost:3000 (admin/admin)")
    print("=" * 60)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed the engagement ledger")
    parser.add_argument("--api-url", default="http://localhost:8000", help="API base URL")
    parser.add_argument("--seed", type=int, default=None, help="Random seed for a repeatable dataset")
    args = parser.parse_args()
    if args.seed is not None:
        random.seed(args.seed)
    asyncio.run(seed(Settings(), args.api_url))
