"""
Location Stats — Entry Point
==============================

Run: python main.py
"""

import logging
import os
import sys

from dotenv import load_dotenv

load_dotenv()

# Configure logging
logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO")),
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger("location-stats")

PORT = int(os.getenv("DASHBOARD_PORT", os.getenv("PORT", "3000")))

if __name__ == "__main__":
    import uvicorn

    if not os.getenv("GHL_API_KEY"):
        logger.error("Missing GHL_API_KEY in environment")
        sys.exit(1)

    logger.info("=" * 60)
    logger.info("  LOCATION STATS — CRM Funnel Metrics")
    logger.info("=" * 60)
    logger.info(f"  Server      : http://0.0.0.0:{PORT}")
    logger.info(f"  Locations   : http://localhost:{PORT}/locations")
    logger.info(f"  Stats       : http://localhost:{PORT}/stats/<location>")
    logger.info(f"  API Docs    : http://localhost:{PORT}/docs")
    logger.info(f"  Strategy    : {os.getenv('CLASSIFICATION_STRATEGY', 'tag')}")
    logger.info(f"  Debug       : {os.getenv('DEBUG', 'false')}")
    logger.info("=" * 60)

    uvicorn.run(
        "dashboard.api.main:app",
        host="0.0.0.0",
        port=PORT,
        reload=os.getenv("DEBUG", "false").lower() == "true",
    )
