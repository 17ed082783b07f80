"""Tests for the BM25 retrieval engine."""

from openledger.services.retrieval import BM25Index, Document, tokenize


def _index(*docs: tuple[str, str, str]) -> BM25Index:
    index = BM25Index()
    index.add_documents([Document(id=i, type=t, title="", content=c) for i, t, c in docs])
    return index


class TestTokenize:
    def test_lowercases_and_drops_short_tokens(self):
        assert tokenize("We DO collect e-mail, IP & device IDs!") == ["collect", "mail", "device", "ids"]


class TestRanking:
    def test_higher_term_frequency_ranks_first(self):
        index = _index(
            ("A", "policy", "consent consent records"),
            ("B", "policy", "consent banner"),
            ("C", "policy", "unrelated text here"),
        )
        results = index.search("consent")
        assert [r.document.id for r in results] == ["A", "B"]
        assert results[0].score > results[1].score

    def test_ties_keep_insertion_order(self):
        index = _index(
            ("X", "policy", "alpha beta"),
            ("Y", "policy", "alpha beta"),
            ("Z", "policy", "gamma delta"),
        )
        assert [r.document.id for r in index.search("alpha")] == ["X", "Y"]

    def test_absent_terms_contribute_nothing(self):
        index = _index(("A", "policy", "consent records"))
        assert index.idf("missing") == 0.0
        assert index.search("missing words") == []

    def test_empty_query_and_empty_index(self):
        assert BM25Index().search("consent") == []
        assert _index(("A", "policy", "consent")).search("a an") == []

    def test_top_k_and_type_filter(self):
        index = _index(
            ("P1", "policy", "data sharing partners"),
            ("C1", "compliance", "data sharing opt out"),
            ("P2", "policy", "data retention"),
        )
        assert len(index.search("data", top_k=2)) == 2
        assert [r.document.id for r in index.search_compliance("data sharing")] == ["C1"]
        assert {r.document.type for r in index.search_policies("data")} == {"policy"}


class TestCorpus:
    def test_from_kb_indexes_sections_controls_and_prompts(self, kb, kb_dir):
        index = BM25Index.from_kb(kb, kb_dir / "prompts")
        stats = index.get_stats()
        assert stats["documents_by_type"]["policy"] == 7
        assert stats["documents_by_type"]["compliance"] == 14
        assert stats["documents_by_type"]["prompt"] == 4
        assert index.search_prompts("answer")[0].document.id.startswith("PROMPT.")

    def test_add_policy_markdown_splits_sections(self):
        index = BM25Index()
        added = index.add_policy_markdown("# Privacy Policy\n\n## One\n\nfirst body\n\n## Two\n\nsecond body\n")
        assert added == 2
        assert [d.title for d in index.documents] == ["One", "Two"]
        assert index.documents[0].id == "POLICY.GENERATED.1"

    def test_control_name_is_indexed_once(self, kb):
        index = BM25Index.from_kb(kb)
        control = kb.frameworks[0].controls[0]
        document = next(d for d in index.documents if d.id == control.id)
        assert document.title == control.name
        assert document.content == control.description.strip()
        assert control.name not in document.content
