import csv
import json

import pytest

from conftest import FakeGraph, FakeTenant, StubAuthenticator, graph_user, read_events
from tenant_reconcile.auth import AuthenticationError
from tenant_reconcile.checkpoint import CheckpointStore
from tenant_reconcile.decisions import ConsoleDecisionProvider, ScriptedDecisionProvider
from tenant_reconcile.directory import DirectoryReadError
from tenant_reconcile.models import Checkpoint, Decision
from tenant_reconcile.reconciler import build_session


class InterruptingProvider(ScriptedDecisionProvider):
    def __init__(self, after, **kwargs):
        super().__init__(**kwargs)
        self.after = after

    def choose(self, pair, differences):
        if len(self.prompts) == self.after:
            raise KeyboardInterrupt
        return super().choose(pair, differences)


class ClockAdvancingProvider(ScriptedDecisionProvider):
    def __init__(self, clock, seconds, **kwargs):
        super().__init__(**kwargs)
        self.clock = clock
        self.seconds = seconds

    def choose(self, pair, differences):
        self.clock.advance(self.seconds)
        return super().choose(pair, differences)


@pytest.fixture
def authenticators(clock):
    return {
        "source": StubAuthenticator("source", clock),
        "destination": StubAuthenticator("destination", clock),
    }


@pytest.fixture
def run_session(config, audit, clock, authenticators):
    outputs = []

    def _run(graph, provider):
        session = build_session(
            config,
            provider,
            audit_logger=audit,
            authenticators=authenticators,
            transport=graph.transport(),
            clock=clock,
            output_fn=outputs.append,
        )
        try:
            return session.run()
        finally:
            session.close()

    _run.outputs = outputs
    return _run


def _graph(source_users, destination_users):
    return FakeGraph(FakeTenant(source_users, page_size=3), FakeTenant(destination_users, page_size=3))


def test_full_run(tmp_path, config, run_session):
    graph = _graph(
        [
            graph_user("alice@src.com", department="Sales"),
            graph_user("bob@src.com", department="Sales"),
            graph_user("carol@src.com", department="Sales"),
            graph_user("John.Doe@src.com", jobTitle="Engineer"),
            graph_user("dave@src.com", department="Legal", businessPhones=["1", "2"]),
            graph_user("broken", department="Sales"),
        ],
        [
            graph_user("alice@dst.com", department="Marketing"),
            graph_user("carol@dst.com", department="Marketing"),
            graph_user("john.doe@dst.com", jobTitle="Manager"),
            graph_user("dave@dst.com", department="Legal", businessPhones=["1", "2"]),
        ],
    )
    provider = ScriptedDecisionProvider(
        {"alice@src.com": "d", "carol@src.com": "f", "John.Doe@src.com": "s"},
        notes={"carol@src.com": "needs manager approval"},
        export_path=str(tmp_path / "flagged.csv"),
    )

    result = run_session(graph, provider)

    counters = result.counters
    assert counters.processed == 6
    assert counters.with_differences == 3
    assert counters.merged_to_destination == 1
    assert counters.merged_to_source == 1
    assert counters.no_match == 1
    assert counters.skipped == 1
    assert counters.errors == 0
    assert graph.tenants["destination"].patches == [("id-alice@dst.com", {"department": "Sales"})]
    assert graph.tenants["source"].patches == [("id-John.Doe@src.com", {"jobTitle": "Manager"})]
    assert [upn for upn, _ in provider.prompts] == ["alice@src.com", "carol@src.com", "John.Doe@src.com"]

    assert result.export_path == tmp_path / "flagged.csv"
    with open(result.export_path, newline="", encoding="utf-8-sig") as fh:
        rows = list(csv.DictReader(fh))
    assert len(rows) == 1
    assert rows[0]["note"] == "needs manager approval"
    assert rows[0]["source_upn"] == "carol@src.com"

    assert not config.checkpoint_path.exists()
    assert "Reconciliation Summary" in run_session.outputs[-1]


def test_zero_differences_no_prompt_no_update(config, run_session):
    graph = _graph(
        [graph_user("alice@src.com", department="Sales")],
        [graph_user("alice@dst.com", department="Sales")],
    )
    provider = ScriptedDecisionProvider()

    result = run_session(graph, provider)

    assert provider.prompts == []
    assert graph.tenants["destination"].patches == []
    assert result.counters.processed == 1
    assert result.counters.with_differences == 0


def test_no_match_recorded_as_processed(config, audit, run_session):
    graph = _graph(
        [graph_user("bob@src.com", department="Sales"), graph_user("zed@src.com", department="A")],
        [graph_user("zed@dst.com", department="B")],
    )
    provider = InterruptingProvider(after=0)

    with pytest.raises(KeyboardInterrupt):
        run_session(graph, provider)

    saved = CheckpointStore(config.checkpoint_path, audit).load()
    assert saved.processed == ["bob@src.com"]
    assert saved.no_match == 1


def test_resume_skips_processed_without_prompt(config, audit, run_session):
    CheckpointStore(config.checkpoint_path, audit).save(
        Checkpoint(processed=["alice@src.com"], skipped=1)
    )
    graph = _graph(
        [graph_user("alice@src.com", department="Sales"), graph_user("bob@src.com", department="Sales")],
        [graph_user("alice@dst.com", department="Marketing"), graph_user("bob@dst.com", department="Ops")],
    )
    provider = ScriptedDecisionProvider(default=Decision.SKIP)

    result = run_session(graph, provider)

    assert [upn for upn, _ in provider.prompts] == ["bob@src.com"]
    assert result.counters.processed == 2
    assert result.counters.skipped == 2


def test_interrupted_run_resumes_remaining_users(config, audit, run_session):
    source = [graph_user(f"user{i}@src.com", department="A") for i in range(10)]
    destination = [graph_user(f"user{i}@dst.com", department="B") for i in range(10)]

    first = InterruptingProvider(after=7, default=Decision.SKIP)
    with pytest.raises(KeyboardInterrupt):
        run_session(_graph(source, destination), first)

    saved = CheckpointStore(config.checkpoint_path, audit).load()
    assert saved.processed == [f"user{i}@src.com" for i in range(7)]
    assert saved.skipped == 7

    second = ScriptedDecisionProvider(default=Decision.SKIP)
    result = run_session(_graph(source, destination), second)

    assert [upn for upn, _ in second.prompts] == ["user7@src.com", "user8@src.com", "user9@src.com"]
    assert result.counters.processed == 10
    assert result.counters.skipped == 10
    assert result.counters.with_differences == 10
    assert not config.checkpoint_path.exists()


def test_periodic_checkpoint(config, audit, tmp_path, run_session):
    source = [graph_user(f"user{i}@src.com", department="A") for i in range(6)]
    destination = [graph_user(f"user{i}@dst.com", department="B") for i in range(6)]

    run_session(_graph(source, destination), ScriptedDecisionProvider(default=Decision.SKIP))

    saves = [e for e in read_events(tmp_path / "audit.jsonl") if e["message"] == "checkpoint_saved"]
    assert [e["processed"] for e in saves] == [5]


def test_checkpoint_retained_when_errors(config, audit, run_session):
    graph = _graph(
        [graph_user("alice@src.com", department="Sales"), graph_user("bob@src.com", department="Sales")],
        [graph_user("alice@dst.com", department="Ops"), graph_user("bob@dst.com", department="Ops")],
    )
    graph.tenants["destination"].fail_patch_ids.add("id-alice@dst.com")

    result = run_session(graph, ScriptedDecisionProvider(default=Decision.MERGE_TO_DESTINATION))

    assert result.counters.errors == 1
    assert result.counters.merged_to_destination == 1
    assert not result.succeeded
    saved = json.loads(config.checkpoint_path.read_text(encoding="utf-8"))
    assert saved["processed"] == ["alice@src.com", "bob@src.com"]
    assert saved["errors"] == 1


def test_flagged_entries_survive_resume(config, audit, tmp_path, run_session):
    source = [graph_user("carol@src.com", department="A"), graph_user("dan@src.com", department="A")]
    destination = [graph_user("carol@dst.com", department="B"), graph_user("dan@dst.com", department="B")]

    first = InterruptingProvider(after=1, decisions=["f"], notes={"carol@src.com": "check with HR"})
    with pytest.raises(KeyboardInterrupt):
        run_session(_graph(source, destination), first)

    second = ScriptedDecisionProvider(["k"], export_path=str(tmp_path / "flagged.csv"))
    result = run_session(_graph(source, destination), second)

    assert [entry.note for entry in result.flagged] == ["check with HR"]
    assert result.export_path is not None


def test_duplicate_source_listing_decided_once(config, run_session):
    graph = _graph(
        [graph_user("alice@src.com", department="A"), graph_user("alice@src.com", department="A")],
        [graph_user("alice@dst.com", department="B")],
    )
    provider = ScriptedDecisionProvider(default=Decision.SKIP)

    result = run_session(graph, provider)

    assert len(provider.prompts) == 1
    assert result.counters.processed == 1


def test_tokens_refreshed_during_long_session(config, clock, authenticators, run_session):
    source = [graph_user(f"user{i}@src.com", department="A") for i in range(4)]
    destination = [graph_user(f"user{i}@dst.com", department="B") for i in range(4)]
    provider = ClockAdvancingProvider(clock, 30 * 60, default=Decision.SKIP)

    run_session(_graph(source, destination), provider)

    assert authenticators["source"].calls == 2
    assert authenticators["destination"].calls == 2


def test_authentication_failure_aborts(config, authenticators, run_session):
    authenticators["destination"].fail = True
    graph = _graph([graph_user("alice@src.com")], [])

    with pytest.raises(AuthenticationError):
        run_session(graph, ScriptedDecisionProvider())
    assert graph.tenants["source"].list_requests == []


def test_listing_failure_aborts(config, run_session):
    graph = _graph([graph_user(f"user{i}@src.com") for i in range(5)], [])
    graph.tenants["source"].fail_list_page = 2

    with pytest.raises(DirectoryReadError):
        run_session(graph, ScriptedDecisionProvider())
    assert not config.checkpoint_path.exists()


def test_closed_input_saves_checkpoint_and_prints_summary(config, audit, run_session):
    source = [graph_user(f"user{i}@src.com", department="A") for i in range(8)]
    destination = [graph_user(f"user{i}@dst.com", department="B") for i in range(8)]
    answers = iter(["k"] * 6)

    def read_answer(prompt):
        try:
            return next(answers)
        except StopIteration:
            raise EOFError from None

    provider = ConsoleDecisionProvider(input_fn=read_answer, output_fn=lambda text: None)
    with pytest.raises(EOFError):
        run_session(_graph(source, destination), provider)

    saved = CheckpointStore(config.checkpoint_path, audit).load()
    assert saved.processed == [f"user{i}@src.com" for i in range(6)]
    assert saved.skipped == 6
    assert "Reconciliation Summary" in run_session.outputs[-1]


def test_users_without_principal_name_each_skipped(config, tmp_path, run_session):
    graph = _graph(
        [
            {"id": "id-nameless-1", "userPrincipalName": None, "department": "A"},
            {"id": "id-nameless-2", "userPrincipalName": None, "department": "A"},
        ],
        [],
    )

    result = run_session(graph, ScriptedDecisionProvider())

    assert result.counters.processed == 2
    assert result.counters.skipped == 2
    warnings = [
        e["user_id"]
        for e in read_events(tmp_path / "audit.jsonl")
        if e["message"] == "malformed_principal_name"
    ]
    assert warnings == ["id-nameless-1", "id-nameless-2"]


def test_token_refreshed_before_merge_after_long_prompt(config, clock, authenticators, run_session):
    graph = _graph(
        [graph_user("alice@src.com", department="Sales")],
        [graph_user("alice@dst.com", department="Ops")],
    )
    provider = ClockAdvancingProvider(clock, 51 * 60, default=Decision.MERGE_TO_DESTINATION)

    result = run_session(graph, provider)

    assert authenticators["destination"].calls == 2
    assert authenticators["source"].calls == 1
    assert graph.tenants["destination"].patches == [("id-alice@dst.com", {"department": "Sales"})]
    assert result.counters.errors == 0
