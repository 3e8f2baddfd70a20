import json

from promptsmith.services.notifications import NotificationCenter
from promptsmith.infrastructure.snapshot_store import SnapshotStore
from promptsmith.services import prompt_templates


def test_notification_center_keeps_recent_items():
    center = NotificationCenter(limit=2)
    center.notify("info", "one")
    center.notify("warning", "two")
    center.notify("error", "three")
    assert [(n.kind, n.message) for n in center.items()] == [("warning", "two"), ("error", "three")]


def test_snapshot_store_round_trip(tmp_path):
    store = SnapshotStore(tmp_path / "nested" / "snapshots.json")
    store.write("s1", {"artifacts": {"requirement_report": "r"}})
    store.write("s2", {"artifacts": {}})

    loaded = store.load("s1")
    assert loaded["artifacts"] == {"requirement_report": "r"}
    assert loaded["saved_at"].endswith("Z")
    assert store.load("unknown") is None
    assert set(json.loads(store.path.read_text(encoding="utf-8"))) == {"s1", "s2"}


def test_snapshot_store_tolerates_corrupt_file(tmp_path):
    path = tmp_path / "snapshots.json"
    path.write_text("{not json", encoding="utf-8")
    store = SnapshotStore(path)
    assert store.load("s1") is None
    store.write("s1", {"artifacts": {}})
    assert path.read_text(encoding="utf-8") == "{not json"


def test_prompt_templates_follow_language_and_prompt_type():
    zh = prompt_templates.thinking_messages("报告", "zh", "user")
    assert zh[0].role == "system" and "用户提示词" in zh[0].content
    en = prompt_templates.advice_messages("Prompt body", "en", "system")
    assert "system prompt" in en[0].content
    assert en[1].content.endswith("Prompt body")

    translate = prompt_templates.translation_messages("你好", "zh", "en")
    assert translate[-1].content == "你好"
    convert = prompt_templates.format_conversion_messages("# T", "markdown", "xml", "en")
    assert "XML" in convert[0].content
