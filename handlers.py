# handlers.py
"""Payload handlers, one per job type.

A handler takes the job and either returns or raises ``HandlerError``. It runs
once, after the job's required work time has been served, and is not
preemptible: a side effect like sending an email cannot be resumed halfway.
"""
import logging
from typing import Callable, Dict

from models import HandlerError, Job, JobType

logger = logging.getLogger(__name__)

HANDLERS: Dict[str, Callable[[Job], None]] = {}


def register(job_type):
    key = getattr(job_type, "value", job_type).upper()

    def decorator(func):
        HANDLERS[key] = func
        return func
    return decorator


def get_handler(job_type):
    handler = HANDLERS.get(str(job_type).upper())
    if handler is None:
        raise HandlerError(f"Unknown job type: {job_type}")
    return handler


def run_handler(job: Job):
    get_handler(job.type)(job)


@register(JobType.DELAY)
def delay_handler(job):
    # the wait itself is served by the execution controller's delay phase
    logger.info(f"Delay job {job.id} finished waiting")


@register(JobType.EMAIL)
def email_handler(job):
    to = job.payload.get("to")
    if not to:
        raise HandlerError("Missing email recipient")
    logger.info(f"Sending email to {to}")


@register(JobType.WEBHOOK)
def webhook_handler(job):
    url = job.payload.get("url")
    if not url:
        raise HandlerError("Missing webhook URL")
    logger.info(f"Calling webhook: {url}")
