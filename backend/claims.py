"""
Claim tickets for anonymous analyses.

An anonymous upload produces a temp analysis that lives for
``TEMP_ANALYSIS_TTL_MINUTES``. After payment and sign-in the client presents
the ticket id once to promote the analysis into a persisted record.
"""
import logging
import math
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from .config import TEMP_ANALYSIS_TTL_MINUTES, TEMP_TICKET_GRACE_SECONDS

logger = logging.getLogger(__name__)

TEMP_ID_PREFIX = 'temp_'


class TicketError(Exception):
    pass


class TicketNotFoundError(TicketError):
    pass


class TicketExpiredError(TicketError):
    pass


def utcnow() -> datetime:
    """Naive UTC timestamp, the form MongoDB hands back"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def isoformat_utc(value: datetime) -> str:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat(timespec='milliseconds') + 'Z'


def new_temp_analysis_id() -> str:
    return TEMP_ID_PREFIX + str(uuid.uuid4())


def seconds_remaining(expires_at: datetime, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    return max(0, math.floor((expires_at - now).total_seconds()))


async def issue_ticket(db, analysis_data: dict, image_data: str,
                       now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    ticket = {
        'id': new_temp_analysis_id(),
        'analysis_data': analysis_data,
        'image_data': image_data,
        'created_at': now,
        'expires_at': now + timedelta(minutes=TEMP_ANALYSIS_TTL_MINUTES),
    }
    await db.temp_analyses.insert_one(ticket)
    logger.info(f"Issued temp analysis {ticket['id']} expiring at {isoformat_utc(ticket['expires_at'])}")
    return ticket


async def claim_ticket(db, temp_analysis_id: str, now: Optional[datetime] = None) -> dict:
    """
    Atomically remove and return a ticket. A ticket can be claimed once;
    an expired ticket is consumed and reported as expired.
    """
    ticket = await db.temp_analyses.find_one_and_delete({'id': temp_analysis_id})
    if not ticket:
        raise TicketNotFoundError("Temporary analysis not found or already claimed")

    now = now or utcnow()
    if now > ticket['expires_at']:
        logger.info(f"Temp analysis {temp_analysis_id} expired before it was claimed")
        raise TicketExpiredError("Temporary analysis has expired")

    return ticket


async def ensure_indexes(db):
    # Expired tickets outlive expires_at by the grace period so claim_ticket can report them as expired
    await db.temp_analyses.create_index('expires_at', expireAfterSeconds=TEMP_TICKET_GRACE_SECONDS)
    await db.temp_analyses.create_index('id', unique=True)
    await db.analyses.create_index('id', unique=True)
    await db.analyses.create_index([('user_id', 1), ('created_at', -1)])
    await db.users.create_index('email', unique=True)
