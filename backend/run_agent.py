"""Standalone script to run one digest directly (for local testing or cron)."""
import asyncio
import logging
import sys
from pathlib import Path

# Ensure backend root is on path
sys.path.insert(0, str(Path(__file__).parent))

from dotenv import load_dotenv
load_dotenv(Path(__file__).parent / ".env")

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)


async def main() -> int:
    from digest_agent.database import DigestStore, close_db
    from digest_agent.main import DigestRunner

    logger.info("Starting standalone digest run...")
    try:
        outcome = await DigestRunner(DigestStore()).run()
    finally:
        close_db()
    logger.info(
        f"Done. success={outcome.success}, status={outcome.status}, "
        f"count={outcome.count}, message={outcome.message}"
    )
    return 0 if outcome.success else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
