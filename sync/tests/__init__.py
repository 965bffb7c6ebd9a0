"""Test package for the chat sync core."""

import logging

logging.getLogger("asyncio").setLevel(logging.ERROR)
