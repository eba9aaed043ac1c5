"""WAL checkpoint controller run before any byte-level copy of the live database"""

import logging

from .database import PersistenceLayer
from .errors import CheckpointFailed

logger = logging.getLogger("DentVault.Checkpoint")

STRICT_SYNCHRONOUS = "FULL"


def force_durable(db: PersistenceLayer) -> bool:
    """Flush the write-ahead log into the main database file

    Runs TRUNCATE then FULL checkpoints, raises ``synchronous`` to FULL for a
    final RESTART checkpoint and puts the original ``synchronous`` back.
    Failures are logged and swallowed: a busy reader is the usual cause, and
    the snapshot step still proceeds.

    Args:
        db: Persistence layer owning the live connection

    Returns:
        True if every checkpoint step succeeded
    """
    try:
        truncate_result = db.checkpoint("TRUNCATE")
        logger.debug(f"TRUNCATE checkpoint result: {truncate_result}")

        full_result = db.checkpoint("FULL")
        logger.debug(f"FULL checkpoint result: {full_result}")

        original_sync = db.get_synchronous()
        db.set_synchronous(STRICT_SYNCHRONOUS)
        try:
            restart_result = db.checkpoint("RESTART")
            logger.debug(f"RESTART checkpoint result: {restart_result}")
        finally:
            db.set_synchronous(original_sync)

        busy = any(result[0] for result in (truncate_result, full_result, restart_result))
        if busy:
            logger.warning("Checkpoint completed while readers were active; some frames may remain in the WAL")
        logger.info("WAL checkpoint completed before snapshot")
        return True

    except Exception as e:
        logger.warning(f"{CheckpointFailed.__name__}: WAL checkpoint failed, continuing with snapshot: {e}")
        return False
