import json
import pytest
from unittest.mock import MagicMock

from moral_agent.models import (
    CheckpointAction,
    Decision,
    DecisionRecord,
    DelegateAction,
    ExecuteAction,
    FetchAction,
    ImageAction,
    MessageAction,
    ServeAction,
    SetScheduleAction,
    ThinkAction,
    WriteAction,
)
from moral_agent.policy import DECISIONS_DIR, DecisionStore, PolicyEngine, RetentionPolicy, match_denylist

# ---------------------------------------------------------------------------
# Hard blocks
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("action", [
    WriteAction(path="/founding-document.md", content="new rules"),
    ServeAction(path="/founding-document.md", content="new rules"),
    WriteAction(path="/opt/agent/src/moral_agent/policy.py", content="pass"),
    DelegateAction(path="/opt/agent/run.py", content="rewrite yourself", task_type="code"),
])
def test_protected_targets_always_blocked(action):
    record = PolicyEngine().evaluate(action)
    assert record.decision is Decision.BLOCK
    assert not record.approved

def test_traversal_target_blocked():
    record = PolicyEngine().evaluate(WriteAction(path="/../etc/passwd", content="x"))
    assert record.decision is Decision.BLOCK
    assert "traversal" in record.reasoning

def test_blocked_actions_never_reach_executor():
    actions = [
        WriteAction(path="/founding-document.md", content="x"),
        WriteAction(path="/self/journal.md", content="ok"),
    ]
    approved = PolicyEngine().filter(actions)
    assert approved == [actions[1]]

# ---------------------------------------------------------------------------
# Command denylist
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("command", [
    "rm -rf /",
    "rm -rf /*",
    "sudo rm -fr /etc",
    "rm -r --no-preserve-root /",
    "cd /projects && rm -rf /usr/lib",
    "rm -rf ../../",
    "rm -rf \"/\"",
    "rm -rf '/etc'",
    "rm -rf \"/usr/lib\" build/",
    "rm -rf ~",
    "rm -rf ~/.ssh",
    "rm -rf $HOME",
    "rm -rf \"${HOME}/work\"",
    "mkfs.ext4 /dev/sda1",
    "dd if=/dev/zero of=/dev/sda bs=1M",
    "echo garbage > /dev/sda",
    "chmod -R 777 /",
    "chown -R nobody:nobody /",
    ":(){ :|:& };:",
])
def test_destructive_commands_blocked(command):
    assert match_denylist(command) is not None
    record = PolicyEngine().evaluate(ExecuteAction(content=command))
    assert record.decision is Decision.BLOCK
    assert "denylist" in record.reasoning

@pytest.mark.parametrize("command", [
    "ls -la /projects/",
    "rm -rf /projects/old-build",
    "rm -rf build/",
    "rm -rf \"/projects/old build\"",
    "rm -rf '/public/drafts'",
    "rm -rf backup~",
    "rm notes.txt",
    "python3 -m http.server --help",
    "chmod 644 /public/index.html",
])
def test_ordinary_commands_proceed(command):
    assert match_denylist(command) is None
    assert PolicyEngine().evaluate(ExecuteAction(content=command)).decision is Decision.PROCEED

# ---------------------------------------------------------------------------
# Malformed actions
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("action", [
    WriteAction(content="no path"),
    ServeAction(content="<p>no path</p>"),
    DelegateAction(content="brief without path"),
    FetchAction(),
    ExecuteAction(content="   "),
    ImageAction(path="/public/images/x.png"),
    SetScheduleAction(),
])
def test_malformed_actions_blocked_not_raised(action):
    record = PolicyEngine().evaluate(action)
    assert record.decision is Decision.BLOCK
    assert record.description.startswith("Malformed")

# ---------------------------------------------------------------------------
# Default proceed and audit trail
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("action", [
    ThinkAction(content="hmm"),
    CheckpointAction(label="before-refactor"),
    MessageAction(content="hello"),
    FetchAction(url="https://en.wikipedia.org/wiki/Ethics"),
    ServeAction(path="/public/index.html", content="<html></html>"),
    ImageAction(path="/public/images/a.png", content="a lighthouse"),
    DelegateAction(path="/public/essay.html", content="write an essay"),
    SetScheduleAction(cron="0 * * * *"),
])
def test_default_proceed(action):
    assert PolicyEngine().evaluate(action).decision is Decision.PROCEED

def test_decision_ids_unique():
    engine = PolicyEngine()
    ids = {engine.evaluate(ThinkAction()).id for _ in range(50)}
    assert len(ids) == 50

def test_externally_facing_and_blocked_decisions_are_persisted(storage, tmp_path):
    engine = PolicyEngine(DecisionStore(storage))
    engine.filter([
        ThinkAction(content="private"),
        WriteAction(path="/self/journal.md", content="private"),
        FetchAction(url="https://github.com/"),
        WriteAction(path="/founding-document.md", content="blocked"),
    ])

    files = sorted((tmp_path / DECISIONS_DIR.lstrip("/")).glob("*.json"))
    kinds = sorted(json.loads(f.read_text())["action_kind"] for f in files)
    assert kinds == ["fetch", "write"]

def test_store_failure_does_not_raise():
    store = MagicMock()
    store.save.side_effect = OSError("disk full")
    approved = PolicyEngine(store).filter([MessageAction(content="hi")])
    assert len(approved) == 1

# ---------------------------------------------------------------------------
# Retention
# ---------------------------------------------------------------------------

def test_retention_policy_ticks_every_nth_save():
    policy = RetentionPolicy(max_records=10, every=3)
    assert [policy.tick() for _ in range(6)] == [False, False, True, False, False, True]

def _record(index: int) -> DecisionRecord:
    return DecisionRecord(
        id=f"decision-{index:013d}-0001",
        timestamp="2026-01-01T00:00:00.000Z",
        action_kind="fetch",
        description="d",
        harm_assessment="h",
        decision=Decision.PROCEED,
        reasoning="r",
    )

def test_compaction_keeps_newest_records(storage):
    store = DecisionStore(storage, RetentionPolicy(max_records=3, every=2))
    for index in range(1, 7):
        store.save(_record(index))

    assert store.record_ids() == [_record(i).id for i in (4, 5, 6)]

def test_compact_returns_deleted_count(storage):
    store = DecisionStore(storage, RetentionPolicy(max_records=2, every=1000))
    for index in range(5):
        store.save(_record(index))
    assert store.compact() == 3
    assert len(store.record_ids()) == 2
