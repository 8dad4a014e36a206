"""Citation service — reference extraction, citation graph writes, forward/backward lookups, lineage tracing."""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

import aiosqlite

from lyceum.database import REFERENCE_LENGTH, now_iso
from lyceum.errors import UnknownCitationTarget
from lyceum.models import Publication, PublicationStatus


# ---------------------------------------------------------------------------
# Extraction (pure)
# ---------------------------------------------------------------------------

_TOKEN = rf"[a-z0-9]{{{REFERENCE_LENGTH}}}"
CITATION_GROUP_RE = re.compile(rf"\[({_TOKEN}(?:\s*,\s*{_TOKEN})*)\]")


@dataclass(frozen=True)
class CitationExtraction:
    """Outcome of scanning one piece of content."""

    references: frozenset[str] = frozenset()
    unresolved: tuple[UnknownCitationTarget, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {
            "references": sorted(self.references),
            "unresolved": [u.to_dict() for u in self.unresolved],
        }


def scan_reference_tokens(content: str) -> list[str]:
    """Every token found in ``[abcd]`` / ``[abcd, efgh]`` groups, in order of appearance.

    Matching is case-sensitive: ``[TODO]`` or ``[AB12]`` is prose, not a reference.
    """
    tokens: list[str] = []
    for match in CITATION_GROUP_RE.finditer(content):
        tokens.extend(t.strip() for t in match.group(1).split(","))
    return tokens


def extract_citations(
    content: str,
    known_references: Iterable[str],
    self_reference: str | None = None,
) -> CitationExtraction:
    """
    Resolve the outgoing references of a piece of content.

    Tokens absent from ``known_references`` are dropped and reported as
    diagnostics. The publication's own reference is never included.
    Calling this twice on the same inputs yields the same result.
    """
    known = {r.lower() for r in known_references}
    own = self_reference.lower() if self_reference else None

    resolved: set[str] = set()
    unresolved: dict[str, UnknownCitationTarget] = {}
    for token in scan_reference_tokens(content):
        if token == own:
            continue
        if token in known:
            resolved.add(token)
        elif token not in unresolved:
            unresolved[token] = UnknownCitationTarget(reference=token)

    return CitationExtraction(
        references=frozenset(resolved),
        unresolved=tuple(sorted(unresolved.values(), key=lambda u: u.reference)),
    )


# ---------------------------------------------------------------------------
# Citation writes
# ---------------------------------------------------------------------------

async def known_references(db: aiosqlite.Connection, experiment_id: int) -> set[str]:
    async with db.execute(
        "SELECT reference FROM publications WHERE experiment_id = ?", (experiment_id,)
    ) as cursor:
        rows = await cursor.fetchall()
    return {row[0] for row in rows}


async def replace_citations_in_tx(
    db: aiosqlite.Connection,
    publication: Publication,
    references: Iterable[str],
) -> int:
    """Replace the outgoing edges of ``publication``. Caller owns the transaction."""
    await db.execute("DELETE FROM citations WHERE from_id = ?", (publication.id,))

    refs = sorted(set(references) - {publication.reference})
    if not refs:
        return 0

    placeholders = ",".join("?" for _ in refs)
    async with db.execute(
        f"SELECT id FROM publications WHERE experiment_id = ? AND reference IN ({placeholders})",
        [publication.experiment_id, *refs],
    ) as cursor:
        targets = [row[0] for row in await cursor.fetchall()]

    now = now_iso()
    await db.executemany(
        "INSERT OR IGNORE INTO citations (experiment_id, from_id, to_id, created) VALUES (?, ?, ?, ?)",
        [(publication.experiment_id, publication.id, to_id, now) for to_id in targets],
    )
    return len(targets)


# ---------------------------------------------------------------------------
# Query citations
# ---------------------------------------------------------------------------

async def get_forward_citations(
    db: aiosqlite.Connection,
    publication_id: int,
) -> list[str]:
    """References of all publications that cite a given publication ("Cited by")."""
    async with db.execute(
        """
        SELECT p.reference FROM citations c
        JOIN publications p ON p.id = c.from_id
        WHERE c.to_id = ?
        ORDER BY p.created
        """,
        (publication_id,),
    ) as cursor:
        rows = await cursor.fetchall()
    return [row[0] for row in rows]


async def get_backward_references(
    db: aiosqlite.Connection,
    publication_id: int,
) -> list[str]:
    """References a given publication cites (its bibliography)."""
    async with db.execute(
        """
        SELECT p.reference FROM citations c
        JOIN publications p ON p.id = c.to_id
        WHERE c.from_id = ?
        ORDER BY p.reference
        """,
        (publication_id,),
    ) as cursor:
        rows = await cursor.fetchall()
    return [row[0] for row in rows]


async def list_citations(
    db: aiosqlite.Connection,
    experiment_id: int,
) -> list[dict[str, str]]:
    """Every edge of the experiment's citation graph, as reference pairs."""
    async with db.execute(
        """
        SELECT f.reference AS from_reference, t.reference AS to_reference
        FROM citations c
        JOIN publications f ON f.id = c.from_id
        JOIN publications t ON t.id = c.to_id
        WHERE c.experiment_id = ?
        ORDER BY f.reference, t.reference
        """,
        (experiment_id,),
    ) as cursor:
        rows = await cursor.fetchall()
    return [dict(row) for row in rows]


async def trace_lineage(
    db: aiosqlite.Connection,
    experiment_id: int,
    reference: str,
    max_depth: int = 10,
) -> dict[str, Any]:
    """
    Trace the citation chain of a publication back to its roots.

    Returns a tree: {reference, title, references: [{reference, title, references: [...]}]}.
    Cycles are cut at the first revisit.
    """
    visited: set[str] = set()

    async def _trace(ref: str, depth: int) -> dict[str, Any]:
        if depth >= max_depth or ref in visited:
            return {"reference": ref, "truncated": True}

        visited.add(ref)

        async with db.execute(
            "SELECT id, title FROM publications WHERE experiment_id = ? AND reference = ?",
            (experiment_id, ref),
        ) as cursor:
            row = await cursor.fetchone()

        if row is None:
            return {"reference": ref, "not_found": True}

        refs = await get_backward_references(db, row[0])
        children = [await _trace(child, depth + 1) for child in refs]

        return {
            "reference": ref,
            "title": row[1],
            "references": children,
        }

    return await _trace(reference, 0)


async def get_most_cited(
    db: aiosqlite.Connection,
    experiment_id: int,
    limit: int = 20,
) -> list[dict[str, Any]]:
    """Most-cited published publications of an experiment."""
    async with db.execute(
        """
        SELECT p.reference, p.title, COUNT(c.from_id) AS citations_count
        FROM publications p
        LEFT JOIN citations c ON c.to_id = p.id
        WHERE p.experiment_id = ? AND p.status = ?
        GROUP BY p.id
        ORDER BY citations_count DESC, p.created ASC
        LIMIT ?
        """,
        (experiment_id, PublicationStatus.PUBLISHED.value, limit),
    ) as cursor:
        rows = await cursor.fetchall()
    return [dict(row) for row in rows]
