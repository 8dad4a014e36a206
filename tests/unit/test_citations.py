"""Citation extraction and the stored citation graph."""

from lyceum.advisory import register_advisory
from lyceum.citation_service import (
    extract_citations,
    get_backward_references,
    get_forward_citations,
    get_most_cited,
    scan_reference_tokens,
    trace_lineage,
)
from lyceum.errors import ErrorKind
from lyceum.models import PublicationSubmission
from lyceum.publication_service import publish_publication, submit_publication


class TestExtraction:
    def test_single_and_grouped_references(self):
        content = "Builds on [ab12] and [cd34, ef56]. See also [AB12]."
        assert scan_reference_tokens(content) == ["ab12", "cd34", "ef56"]

    def test_ignores_non_reference_brackets(self):
        assert scan_reference_tokens("[toolong] [abc] [a-12] [ ab12 ]") == []

    def test_resolves_known_and_reports_unknown(self):
        extraction = extract_citations("[ab12, zz99] and [qq00]", {"ab12", "cd34"})
        assert extraction.references == frozenset({"ab12"})
        assert [u.reference for u in extraction.unresolved] == ["qq00", "zz99"]
        assert all(u.kind == ErrorKind.UNKNOWN_CITATION_TARGET for u in extraction.unresolved)

    def test_self_reference_never_included(self):
        extraction = extract_citations("As shown in [ab12] and [cd34]", {"ab12", "cd34"}, self_reference="ab12")
        assert extraction.references == frozenset({"cd34"})
        assert extraction.unresolved == ()

    def test_idempotent(self):
        content = "[ab12] [cd34, xx11] [ab12]"
        known = {"ab12", "cd34"}
        assert extract_citations(content, known, "cd34") == extract_citations(content, known, "cd34")

    def test_uppercase_groups_are_not_references(self):
        extraction = extract_citations("see [AB12] and [TODO], then [ab12]", {"ab12"})
        assert extraction.references == frozenset({"ab12"})
        assert extraction.unresolved == ()
        assert extract_citations("see [ABCD]", {"abcd"}).references == frozenset()


class TestCitationGraph:
    async def _publish(self, db, author, title, content):
        publication, extraction = await submit_publication(
            db, author, PublicationSubmission(title=title, content=content)
        )
        publication = await publish_publication(db, publication.id)
        return publication, extraction

    async def test_edges_recorded_on_submit(self, db, experiment, agents):
        alice = agents[0]
        await register_advisory(db, experiment.id, alice.name)
        root, _ = await self._publish(db, alice, "Root", "First result.")
        child, extraction = await self._publish(db, alice, "Child", f"Extends [{root.reference}] and [zz99].")

        assert extraction.references == frozenset({root.reference})
        assert [u.reference for u in extraction.unresolved] == ["zz99"]
        assert await get_backward_references(db, child.id) == [root.reference]
        assert await get_forward_citations(db, root.id) == [child.reference]

    async def test_most_cited_and_lineage(self, db, experiment, agents):
        alice = agents[0]
        await register_advisory(db, experiment.id, alice.name)
        root, _ = await self._publish(db, alice, "Root", "Base.")
        mid, _ = await self._publish(db, alice, "Mid", f"Uses [{root.reference}].")
        leaf, _ = await self._publish(db, alice, "Leaf", f"Uses [{mid.reference}, {root.reference}].")

        most = await get_most_cited(db, experiment.id)
        assert most[0]["reference"] == root.reference
        assert most[0]["citations_count"] == 2

        tree = await trace_lineage(db, experiment.id, leaf.reference)
        assert tree["title"] == "Leaf"
        assert {c["reference"] for c in tree["references"]} == {mid.reference, root.reference}
