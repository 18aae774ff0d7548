"""Write a structured election payload into elections, candidates and links."""

import logging
import re
from datetime import date

from sqlalchemy import select
from sqlalchemy.orm import Session

from ballotflow.db import utcnow
from ballotflow.models.election import Candidate, Election, ElectionLink
from ballotflow.schemas.payloads import InsertResultItem, StructuredCandidate, StructuredPayload
from ballotflow.services.errors import OutputParseError

logger = logging.getLogger(__name__)

_ELECTION_TYPES = frozenset({"LOCAL", "STATE", "UNIVERSITY", "NATIONAL"})
_DATE_RE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$")
_SLUG_RE = re.compile(r"[^a-z0-9]+")


def clean_optional(value: str | None) -> str | None:
    """Blank and "N/A" values become None."""
    if value is None:
        return None
    s = str(value).strip()
    if not s or s.upper() == "N/A":
        return None
    return s


def parse_election_date(value: str) -> date | None:
    m = _DATE_RE.match((value or "").strip())
    if not m:
        return None
    try:
        return date(int(m.group(3)), int(m.group(1)), int(m.group(2)))
    except ValueError:
        return None


def parse_seats(value: str | None) -> int | None:
    m = re.search(r"\d+", value or "")
    return int(m.group(0)) if m else None


def slugify(name: str) -> str:
    return _SLUG_RE.sub("-", name.lower()).strip("-") or "candidate"


def unique_slug(db: Session, name: str) -> str:
    base = slugify(name)
    slug = base
    n = 2
    while db.scalar(select(Candidate.id).where(Candidate.slug == slug)) is not None:
        slug = f"{base}-{n}"
        n += 1
    return slug


def _candidate_fields(c: StructuredCandidate, hidden: bool, uploaded_by: str) -> dict[str, object]:
    return {
        "current_role": c.current_role,
        "website": clean_optional(c.campaign_website_url),
        "linkedin": clean_optional(c.linkedin_url),
        "bio": c.bio or "",
        "current_city": c.home_city,
        "current_state": c.hometown_state,
        "status": "APPROVED",
        "verified": False,
        "email": clean_optional(c.email),
        "hidden": hidden,
        "uploaded_by": uploaded_by,
    }


def _upsert_candidate(
    db: Session, c: StructuredCandidate, hidden: bool, uploaded_by: str
) -> Candidate:
    name = (c.name or "").strip() or "Unnamed"
    requested = (c.slug or "").strip()
    fields = _candidate_fields(c, hidden, uploaded_by)
    if requested:
        existing = db.scalar(select(Candidate).where(Candidate.slug == requested))
        if existing is not None:
            for key, value in fields.items():
                setattr(existing, key, value)
            return existing
    candidate = Candidate(name=name, slug=requested or unique_slug(db, name), **fields)
    db.add(candidate)
    db.flush()
    return candidate


def seed_structured_data(
    db: Session,
    payload: StructuredPayload,
    *,
    uploaded_by: str,
    force_hidden: bool = True,
    base_url: str = "",
    today: date | None = None,
) -> list[InsertResultItem]:
    """Create the payload's elections, upsert candidates by slug and link them.

    Flushes but does not commit: the caller commits together with the job
    bookkeeping, so a failed INSERT job leaves nothing behind.
    """
    today = today or utcnow().date()
    results: list[InsertResultItem] = []
    for item in payload.elections:
        e = item.election
        election_date = parse_election_date(e.date)
        if election_date is None:
            raise OutputParseError(f"Invalid date for election '{e.title}': '{e.date}'")
        election_type = (e.type or "").upper()
        election = Election(
            position=e.title or "Election",
            date=election_date,
            active=election_date >= today,
            city=e.city,
            state=e.state,
            type=election_type if election_type in _ELECTION_TYPES else "LOCAL",
            positions=parse_seats(e.number_of_seats) or 1,
            description=e.description,
            hidden=force_hidden,
            uploaded_by=uploaded_by,
        )
        db.add(election)
        db.flush()

        slugs: list[str] = []
        emails: list[str | None] = []
        for c in item.candidates:
            candidate = _upsert_candidate(db, c, force_hidden, uploaded_by)
            slugs.append(candidate.slug)
            emails.append(candidate.email)
            link = db.scalar(
                select(ElectionLink).where(
                    ElectionLink.candidate_id == candidate.id,
                    ElectionLink.election_id == election.id,
                )
            )
            if link is None:
                db.add(
                    ElectionLink(
                        candidate_id=candidate.id,
                        election_id=election.id,
                        party=c.party or "",
                        policies=c.key_policies or [],
                        sources=c.sources or [],
                        additional_notes=c.additional_notes,
                    )
                )
        db.flush()

        results.append(
            InsertResultItem(
                election_id=election.id,
                position=election.position,
                city=election.city,
                state=election.state,
                hidden=election.hidden,
                candidate_slugs=slugs,
                candidate_emails=emails,
                election_results_url=f"{base_url.rstrip('/')}/results?electionID={election.id}",
            )
        )
        logger.info(
            "seeded election %d (%s, %s) with %d candidates",
            election.id,
            election.city,
            election.state,
            len(slugs),
        )
    return results
