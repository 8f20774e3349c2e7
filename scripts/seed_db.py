"""
Database Seeding Script.

Attaches a sample owned number, forwarding rule and whisper to an
existing user so inbound routing can be exercised locally.

Usage:
    python scripts/seed_db.py <user_id> [forward_to_number]
"""

import asyncio
import os
import sys

# Add project root to path so we can import callflow
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from callflow.db import get_db
from callflow.logging_config import setup_logging, get_logger

setup_logging()
logger = get_logger(__name__)

SAMPLE_NUMBER = {
    "phone_number": "+15550000001",
    "twilio_sid": "PN00000000000000000000000000000001",
    "friendly_name": "Sales Line",
    "country": "US",
    "region": "CA",
    "locality": "San Francisco",
    "capabilities": {"voice": True, "sms": False, "mms": False},
    "is_active": True,
    "is_free": True,
    "whisper_enabled": True,
    "whisper_type": "say",
    "whisper_text": "Call for {label} from {caller}",
}


async def seed(user_id: int, forward_to: str):
    db = get_db()

    logger.info("seeding_started", user_id=user_id)

    if not await db.get_user(user_id):
        logger.error("seed_user_missing", user_id=user_id)
        return

    number = await db.get_phone_number_by_number(SAMPLE_NUMBER["phone_number"])
    if number:
        logger.info("seed_number_exists", phone_number_id=number["id"])
    else:
        number = await db.create_phone_number({**SAMPLE_NUMBER, "user_id": user_id})
        logger.info("seed_number_created", phone_number_id=number["id"])

    if await db.get_forwarding_for_number(number["id"]):
        logger.info("seed_forwarding_exists", phone_number_id=number["id"])
    else:
        rule = await db.create_forwarding(
            {
                "user_id": user_id,
                "phone_number_id": number["id"],
                "forward_to_number": forward_to,
                "forwarding_type": "always",
                "ring_timeout": 20,
                "is_active": True,
            }
        )
        logger.info("seed_forwarding_created", forwarding_id=rule["id"], forward_to=forward_to)

    logger.info("seeding_complete")


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print(__doc__)
        sys.exit(1)
    asyncio.run(seed(int(sys.argv[1]), sys.argv[2] if len(sys.argv) > 2 else "+15550000002"))
