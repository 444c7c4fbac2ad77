"""Tests for codeloop.core.session — JSONL transcripts."""

from __future__ import annotations

from pathlib import Path

from codeloop.core.session import Session, list_sessions
from codeloop.types.messages import (
    AssistantMessage,
    TextBlock,
    ToolUseBlock,
    create_progress_message,
    create_tool_result_message,
    create_user_message,
)


class TestSession:
    def test_new_session(self, sessions_dir: Path):
        session = Session(cwd="/work")
        assert len(session.session_id) == 12
        assert session.path.parent == sessions_dir
        assert session.messages == []

    def test_record_and_resume(self, sessions_dir: Path):
        session = Session(cwd="/work")
        session.save_metadata(model="claude-sonnet-4-6")
        prompt = create_user_message("List the files")
        session.add_message(prompt)
        session.add_message(AssistantMessage(
            content=(TextBlock("Listing."), ToolUseBlock("t1", "Glob", {"pattern": "*"})),
            cost_usd=0.25,
        ))
        session.add_message(create_progress_message("t1", frozenset({"t1"}), "scanning"))
        session.add_message(create_tool_result_message("t1", "a.py\nb.py"))

        resumed = Session(session.session_id)
        assert len(resumed.messages) == 3
        assert resumed.messages[0].content == "List the files"
        assert resumed.messages[0].uuid == prompt.uuid
        assert resumed.messages[1].tool_uses[0].input == {"pattern": "*"}
        assert resumed.messages[2].tool_result.content == "a.py\nb.py"
        assert resumed.turns == 1
        assert resumed.total_cost == 0.25

    def test_corrupt_lines_skipped(self, sessions_dir: Path):
        session = Session()
        session.add_message(create_user_message("hello"))
        with open(session.path, "a") as f:
            f.write("{not json\n")
        session.add_message(create_user_message("again"))

        resumed = Session(session.session_id)
        assert [m.content for m in resumed.messages] == ["hello", "again"]

    def test_get_info_and_listing(self, sessions_dir: Path):
        first = Session(cwd="/one")
        first.save_metadata(model="m1")
        second = Session(cwd="/two")
        second.save_metadata(model="m2")
        second.add_message(create_user_message("x"))

        info = second.get_info()
        assert info.cwd == "/two"
        assert info.model == "m2"
        assert info.messages == 1

        listed = {i.session_id: i for i in list_sessions()}
        assert set(listed) == {first.session_id, second.session_id}
        assert listed[first.session_id].model == "m1"

    def test_explicit_directory(self, tmp_path: Path):
        session = Session(directory=tmp_path)
        session.add_message(create_user_message("x"))
        assert (tmp_path / f"{session.session_id}.jsonl").exists()
        assert [i.session_id for i in list_sessions(tmp_path)] == [session.session_id]
