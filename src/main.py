"""
main.py

Entry point for the BTO allocation engine.

Configures logging, builds the engine over a fresh in-memory database and,
when BTO_SNAPSHOT_PATH is set, loads that snapshot and logs a summary.

Usage
-----
    # Option 1: empty engine, console logging
    python main.py

    # Option 2: load a snapshot, log JSON lines to a file as well
    BTO_SNAPSHOT_PATH=data/bto.json BTO_LOG_JSON_FORMAT=true BTO_LOG_FILE=logs/bto.log python main.py
"""

from loguru import logger

from config import Settings, get_settings
from engine import BTOEngine
from infrastructure import InMemoryDatabase
from logging_config import configure_logging
from snapshot import read_snapshot


def build_engine(settings: Settings) -> BTOEngine:
    engine = BTOEngine(InMemoryDatabase(), settings)
    if settings.SNAPSHOT_PATH:
        engine.load_snapshot(read_snapshot(settings.SNAPSHOT_PATH))
    return engine


def main() -> BTOEngine:
    settings = get_settings()
    configure_logging(settings)
    engine = build_engine(settings)

    projects = engine.list_projects()
    logger.info(
        f"{settings.APP_NAME} ready: {len(projects)} projects, "
        f"{sum(p.visible for p in projects)} visible, "
        f"{len(engine.list_applications())} current applications"
    )
    return engine


if __name__ == "__main__":
    main()
