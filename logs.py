# logs.py
import logging

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(threadName)s %(name)s: %(message)s"


def configure_logging(level="INFO"):
    # no-op for handlers if the host (e.g. pytest) already configured the root logger
    logging.basicConfig(format=LOG_FORMAT)
    logging.getLogger().setLevel(level.upper() if isinstance(level, str) else level)


def log_transition(logger, job_id, old_state, new_state, extra=""):
    old_state = getattr(old_state, "value", old_state)
    new_state = getattr(new_state, "value", new_state)
    logger.info(f"Job {job_id}: {old_state} → {new_state} {extra}".rstrip())
