"""Clear the post cache in Redis."""
import argparse
import asyncio

from posthub.cache import POSTS_ALL_KEY, CacheManager
from posthub.config import settings


async def clear_cache(all_keys: bool = False, pattern: str | None = None) -> int:
    cache = CacheManager(settings.REDIS_URL, socket_timeout=settings.CACHE_SOCKET_TIMEOUT)
    await cache.connect()
    try:
        if all_keys:
            print("Clearing all cache...")
            removed = await cache.delete_pattern("*")
        elif pattern:
            print(f"Clearing cache with pattern: {pattern}")
            removed = await cache.delete_pattern(pattern)
        else:
            print("Clearing default cache...")
            removed = await cache.delete_pattern("post:*")
            removed += await cache.delete_pattern(POSTS_ALL_KEY)
    finally:
        await cache.disconnect()
    print(f"Cache cleared: {removed} key(s) removed")
    return removed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Clear application cache")
    group = parser.add_mutually_exclusive_group()
    group.add_argument("-a", "--all", action="store_true", help="Clear all cache")
    group.add_argument("-p", "--pattern", help="Clear cache by glob pattern")
    return parser


def main(argv: list[str] | None = None):
    args = build_parser().parse_args(argv)
    asyncio.run(clear_cache(all_keys=args.all, pattern=args.pattern))


if __name__ == "__main__":
    main()
