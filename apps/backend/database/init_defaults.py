#!/usr/bin/env python3
"""
Initialize default database values.
This script is run on startup to populate default settings and other default values.
"""

import asyncio
import os
from backend.database import db
from backend.services import data_service
from backend.utils.constants import DEFAULT_NOTIFICATION_DELAY_SECONDS, NOTIFICATION_DELAY_SETTING_KEY


async def init_defaults():
    """Initialize default database values."""
    print("Initializing default database values...")

    async with db.AsyncSessionLocal() as session:
        existing_delay = await data_service.get_setting(session, NOTIFICATION_DELAY_SETTING_KEY)

        if existing_delay is None:
            # Seed from env so a deployment's configured delay becomes the editable default
            default_delay = os.getenv("NOTIFICATION_DELAY_SECONDS", str(DEFAULT_NOTIFICATION_DELAY_SECONDS))
            await data_service.set_setting(session, NOTIFICATION_DELAY_SETTING_KEY, default_delay)
            print(f"✓ Set default notification delay: {default_delay}s")
        else:
            print(f"✓ Notification delay already set: {existing_delay}s")

    print("✓ Default values initialized")


if __name__ == "__main__":
    asyncio.run(init_defaults())
