"""Tests for the JSON memory store."""

from clion.memory import JsonMemoryStore, format_node


class TestJsonMemoryStore:
    def test_search_orders_by_importance(self, memory):
        low = memory.add("Lexer A", "lexer details", importance_score=20)
        high = memory.add("Lexer B", "more lexer details", importance_score=90)
        memory.add("Other", "unrelated")
        assert memory.search("LEXER") == [high, low]
        assert memory.search("lexer", {"min_importance": 50}) == [high]
        assert memory.search("lexer", limit=1) == [high]

    def test_tag_filter(self, memory):
        tagged = memory.add("A", "parser", tags={"cpp"})
        memory.add("B", "parser")
        assert memory.search("parser", {"tag": "cpp"}) == [tagged]

    def test_get_records_access(self, memory):
        node_id = memory.add("A", "x")
        assert memory.recently_accessed() == []
        memory.get(node_id)
        node = memory.get(node_id)
        assert node.access_count == 2
        assert memory.recently_accessed() == [node_id]

    def test_peek_records_no_access(self, memory):
        node_id = memory.add("A", "x")
        assert memory.peek(node_id).access_count == 0
        assert memory.recently_accessed() == []

    def test_importance_clamped(self, memory):
        node_id = memory.add("A", "x", importance_score=250)
        assert memory.get(node_id).importance_score == 100

    def test_generate_context_respects_budget(self, memory):
        first = memory.add("First", "a" * 400)
        second = memory.add("Second", "b" * 400)
        text = memory.generate_context([first, second], max_tokens=50)
        assert "## Memory Node: First" in text
        assert "Second" not in text

    def test_generate_context_records_access_for_rendered_only(self, memory):
        first = memory.add("First", "a" * 400)
        second = memory.add("Second", "b" * 400)
        memory.generate_context([first, second], max_tokens=50)
        assert memory.peek(first).access_count == 1
        assert memory.peek(second).access_count == 0

    def test_generate_context_skips_missing(self, memory):
        node_id = memory.add("Only", "content")
        assert memory.generate_context(["mem_missing", node_id], 1000).startswith("## Memory Node: Only")

    def test_persisted_across_instances(self, tmp_path):
        node_id = JsonMemoryStore(tmp_path / "m").add("Kept", "content", tags={"t"})
        node = JsonMemoryStore(tmp_path / "m").get(node_id)
        assert node.name == "Kept"
        assert node.tags == {"t"}

    def test_format_node(self, memory):
        node = memory.get(memory.add("Name", "Body", description="Desc", tags={"b", "a"}, importance_score=70))
        block = format_node(node)
        assert block.startswith("## Memory Node: Name\n**Description:** Desc\n**Content:** Body\n**Tags:** a, b\n")
        assert "**Importance:** 70/100" in block
        assert block.endswith("\n\n")
