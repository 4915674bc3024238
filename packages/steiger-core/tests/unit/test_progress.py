"""Unit tests for hierarchical progress reporting."""

from __future__ import annotations

from steiger_core.progress import MessageLevel, ProgressTree


class TestProgressTree:
    """Tests for the progress tree structure."""

    def test_child_paths(self) -> None:
        """Test node paths are joined from the root."""
        tree = ProgressTree()
        web = tree.add_child("build").add_child("web")

        assert web.path == "build › web"
        assert [child.name for child in tree.children] == ["build"]

    def test_messages_are_recorded_with_origin_and_level(self) -> None:
        tree = ProgressTree()
        node = tree.add_child("push").add_child("api")

        node.info("pushing 2 layer(s)")
        node.done("pushed")
        node.fail("denied")

        assert [(m.origin, m.level, m.text) for m in tree.messages] == [
            ("push › api", MessageLevel.INFO, "pushing 2 layer(s)"),
            ("push › api", MessageLevel.SUCCESS, "pushed"),
            ("push › api", MessageLevel.FAILURE, "denied"),
        ]

    def test_rename_changes_descendant_paths(self) -> None:
        tree = ProgressTree()
        node = tree.add_child("target")
        child = node.add_child("docker")

        node.set_name("web")

        assert child.path == "web › docker"

    def test_message_buffer_is_bounded(self) -> None:
        """Test only the most recent messages are retained."""
        tree = ProgressTree(capacity=3)
        node = tree.add_child("n")

        for i in range(5):
            node.info(f"line {i}")

        assert [m.text for m in tree.messages] == ["line 2", "line 3", "line 4"]


class TestProgressCounter:
    """Tests for tick counting."""

    def test_init_and_inc(self) -> None:
        node = ProgressTree().add_child("push")

        node.init(total=4)
        node.inc()
        node.inc(2)

        assert node.step == 3
        assert node.total == 4

    def test_init_resets_step(self) -> None:
        node = ProgressTree().add_child("push")
        node.inc(5)

        node.init()

        assert node.step == 0
        assert node.total is None
