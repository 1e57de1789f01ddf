"""
Tests for flow tracing, deduplication, gap flows, journeys, validation,
classification parsing and persistence.
"""

import asyncio

import pytest

from codegraph.config import LLMConfig
from codegraph.errors import LLMError
from codegraph.flows.dedup import (
    deduplicate_by_interaction_overlap,
    deduplicate_by_interaction_set,
    overlap_ratio,
    quality_key,
)
from codegraph.flows.entry_points import EntryMember, EntryPointModule, classify_candidates
from codegraph.flows.gaps import create_gap_flows
from codegraph.flows.generator import FlowGenerator
from codegraph.flows.journeys import build_journeys, normalize_entity
from codegraph.flows.tracer import FlowTracer, TracingContext, flow_name, flow_slug, infer_stakeholder
from codegraph.flows.types import DefinitionStep, FlowArena, FlowSuggestion, slugify, unique_slug
from codegraph.flows.validator import validate_flows
from codegraph.llm.classification import Candidate, EntryPoint, NotEntryPoint, parse_classifications
from codegraph.llm.service import NullLLMService, run_batches
from codegraph.store.models import Interaction

from conftest import SHOP_ENTRY_POINTS, ScriptedLLM, definition_id


def _flow(slug, ids, action=None, entity=None, tier=1, steps=0, **kwargs):
    return FlowSuggestion(
        name=slug,
        slug=slug,
        interaction_ids=list(ids),
        action_type=action,
        target_entity=entity,
        tier=tier,
        definition_steps=[DefinitionStep(i, i + 1) for i in range(steps)],
        description=kwargs.pop("description", f"{slug} flow"),
        **kwargs,
    )


def _interaction(interaction_id, from_id, to_id, from_path="", to_path="", source="ast"):
    return Interaction(
        interaction_id=interaction_id,
        from_module_id=from_id,
        to_module_id=to_id,
        from_module_path=from_path,
        to_module_path=to_path,
        source=source,
    )


# ── Deduplication ──

class TestDedup:
    def test_identical_sets_keep_one(self):
        flows = [_flow("a", [1, 2]), _flow("b", [2, 1]), _flow("c", [1, 2, 2])]
        kept = deduplicate_by_interaction_set(flows)
        assert [f.slug for f in kept] == ["a"]

    def test_identical_sets_prefer_signature(self):
        flows = [_flow("plain", [1, 2]), _flow("signed", [1, 2], "create", "order")]
        kept = deduplicate_by_interaction_set(flows)
        assert [f.slug for f in kept] == ["signed"]

    def test_identical_sets_prefer_more_definition_steps(self):
        flows = [_flow("short", [1, 2], steps=1), _flow("long", [1, 2], steps=3)]
        assert [f.slug for f in deduplicate_by_interaction_set(flows)] == ["long"]

    def test_empty_sets_never_removed(self):
        flows = [_flow("a", []), _flow("b", []), _flow("c", [1])]
        assert len(deduplicate_by_interaction_set(flows)) == 3
        assert len(deduplicate_by_interaction_overlap(flows)) == 3

    def test_overlap_drops_weaker(self):
        flows = [_flow("a", [1, 2, 3, 4], tier=1), _flow("b", [1, 2, 3, 4, 5], tier=2)]
        kept = deduplicate_by_interaction_overlap(flows, 0.75)
        assert [f.slug for f in kept] == ["b"]

    def test_overlap_tie_keeps_fewer_interactions(self):
        # equal signature, tier and definition steps: the smaller set wins
        broad = _flow("broad", [1, 2, 3, 4])
        focused = _flow("focused", [1, 2, 3])
        kept = deduplicate_by_interaction_overlap([broad, focused], 0.75)
        assert [f.slug for f in kept] == ["focused"]
        assert quality_key(focused) > quality_key(broad)

    def test_full_tie_drops_later(self):
        kept = deduplicate_by_interaction_overlap([_flow("a", [1, 2, 3]), _flow("b", [3, 2, 1, 1])], 0.75)
        assert [f.slug for f in kept] == ["a"]

    def test_different_signatures_never_compared(self):
        flows = [_flow("create", [1, 2, 3], "create", "order"), _flow("delete", [1, 2, 3], "delete", "order")]
        assert len(deduplicate_by_interaction_overlap(flows, 0.75)) == 2

    def test_overlap_threshold_is_strict(self):
        flows = [_flow("a", [1, 2, 3, 4]), _flow("b", [1, 2, 3, 9])]
        assert overlap_ratio({1, 2, 3, 4}, {1, 2, 3, 9}) == 0.75
        assert len(deduplicate_by_interaction_overlap(flows, 0.75)) == 2

    def test_loser_stops_comparing(self):
        flows = [_flow("a", [1, 2]), _flow("b", [1, 2, 3], tier=2), _flow("c", [1, 2])]
        kept = deduplicate_by_interaction_overlap(flows, 0.75)
        assert [f.slug for f in kept] == ["b"]

    def test_overlap_ratio_empty(self):
        assert overlap_ratio(set(), {1}) == 0.0


# ── Gap flows ──

class TestGapFlows:
    INTERACTIONS = [
        _interaction(1, 10, 20, "app.api", "app.services"),
        _interaction(2, 20, 30, "app.services", "app.models"),
        _interaction(3, 20, 31, "app.services", "app.storage"),
        _interaction(4, 20, 32, "app.services", "app.cache"),
        _interaction(5, 20, 33, "app.services", "app.events"),
    ]

    def test_uncovered_grouped_by_source(self):
        gaps = create_gap_flows({1}, self.INTERACTIONS)
        assert len(gaps) == 1
        gap = gaps[0]
        assert gap.tier == 0
        assert gap.stakeholder == "system"
        assert gap.interaction_ids == [2, 3, 4, 5]
        assert gap.name == "services calls models, storage, cache (+1 more)"
        assert gap.entry_path == "Internal: app.services"
        assert gap.entry_point_id is None

    def test_every_interaction_covered(self):
        gaps = create_gap_flows([], self.INTERACTIONS)
        covered = {i for g in gaps for i in g.interaction_ids}
        assert covered == {i.interaction_id for i in self.INTERACTIONS}

    def test_nothing_uncovered(self):
        assert create_gap_flows([1, 2, 3, 4, 5], self.INTERACTIONS) == []

    def test_slugs_shared_with_other_flows(self):
        used = {"api-calls-services"}
        gaps = create_gap_flows([2, 3, 4, 5], self.INTERACTIONS, used)
        assert gaps[0].slug == "api-calls-services-2"
        assert "api-calls-services-2" in used

    def test_persisted_flows_cover_all_interactions(self, indexed_db):
        db = indexed_db
        covered = {i for f in db.list_flows() for i in db.get_flow_interaction_ids(f.flow_id)}
        assert covered == {i.interaction_id for i in db.list_interactions()}
        assert all(f.tier == 0 for f in db.list_flows())
        assert db.count_flows() == 4


# ── Journeys ──

class TestJourneys:
    def _registered(self, *flows):
        FlowArena().add_all(list(flows))
        return list(flows)

    def test_entity_journey(self):
        flows = self._registered(
            _flow("create-order-flow", [1, 2], "create", "order", stakeholder="user"),
            _flow("view-order-flow", [2, 3], "view", "order-list", stakeholder="user"),
            _flow("sync-order-flow", [4], "process", "Order", stakeholder="system"),
        )
        journeys = build_journeys(flows)
        assert len(journeys) == 1
        journey = journeys[0]
        assert journey.tier == 2
        assert journey.name == "order create/view/process journey"
        assert journey.slug == "order-create-view-process-journey"
        assert journey.interaction_ids == [1, 2, 3, 4]
        assert journey.subflow_ids == [f.arena_id for f in flows]
        assert journey.stakeholder == "user"
        assert journey.target_entity == "order"
        assert journey.action_type is None

    def test_page_journey_for_flows_outside_entity_journeys(self):
        flows = self._registered(
            _flow("submit-flow", [1], entry_point_module_id=7, entry_path="app.pages.checkout.submit"),
            _flow("cancel-flow", [2], entry_point_module_id=7, entry_path="app.pages.checkout.cancel"),
            _flow("other-flow", [3], entry_point_module_id=8, entry_path="app.pages.home.show"),
        )
        journeys = build_journeys(flows)
        assert [j.name for j in journeys] == ["checkout page journey"]
        assert journeys[0].slug == "checkout-page-journey"
        assert journeys[0].entry_point_module_id == 7

    def test_constituents_sharing_a_slug_stay_separate(self):
        flows = self._registered(
            _flow("create-order-flow", [1], "create", "order"),
            _flow("create-order-flow", [2], "create", "order"),
        )
        journey = build_journeys(flows)[0]
        assert journey.subflow_ids == [f.arena_id for f in flows]
        assert journey.interaction_ids == [1, 2]

    def test_fewer_than_two_flows(self):
        assert build_journeys([_flow("lonely", [1], "create", "order")]) == []

    def test_unregistered_flows_rejected(self):
        with pytest.raises(ValueError):
            build_journeys([_flow("a", [1], "create", "order"), _flow("b", [2], "view", "order")])

    def test_journey_slug_uses_shared_set(self):
        flows = self._registered(
            _flow("a", [1], "create", "order"),
            _flow("b", [2], "view", "order"),
        )
        used = {"order-create-view-journey"}
        assert build_journeys(flows, used)[0].slug == "order-create-view-journey-2"

    def test_normalize_entity(self):
        assert normalize_entity("Order-Detail") == "order"
        assert normalize_entity("invoice") == "invoice"


# ── Tracing ──

class TestTracer:
    def _context(self):
        modules = [
            (1, "app.api.orders", [10]),
            (2, "app.services.orders", [20, 21]),
            (3, "app.models", [30]),
            (4, "app.billing", [40]),
        ]
        interactions = [
            _interaction(100, 1, 2),
            _interaction(101, 2, 3),
            _interaction(102, 3, 4, source="llm-inferred"),
        ]
        call_graph = {10: [20], 20: [30, 21], 21: [30]}
        return TracingContext.build(call_graph, modules, interactions)

    def _entry(self, name="handleSubmitOrder", **kwargs):
        return EntryPointModule(
            module_id=1,
            module_path="app.api.orders",
            module_name="orders",
            members=[EntryMember(definition_id=10, name=name, kind="function", **kwargs)],
        )

    def test_trace_follows_calls_and_inferred_edges(self):
        tracer = FlowTracer(self._context())
        flows = tracer.trace_flows_from_entry_points([self._entry()])
        assert len(flows) == 1
        flow = flows[0]
        assert flow.interaction_ids == [100, 101, 102]
        assert [(s.from_definition_id, s.to_definition_id) for s in flow.definition_steps] == [
            (10, 20), (20, 30), (21, 30),
        ]
        assert [(s.from_module_id, s.to_module_id) for s in flow.inferred_steps] == [(3, 4)]
        assert flow.name == "SubmitOrderFlow"
        assert flow.slug == "submit-order-flow"
        assert flow.stakeholder == "external"
        assert flow.entry_path == "app.api.orders.handleSubmitOrder"
        assert flow.tier == 1
        assert not tracer.truncated

    def test_classified_stakeholder_wins(self):
        flows = FlowTracer(self._context()).trace_flows_from_entry_points(
            [self._entry(action_type="create", target_entity="order", stakeholder="admin")]
        )
        assert flows[0].stakeholder == "admin"
        assert flows[0].name == "CreateOrderFlow"
        assert flows[0].signature == ("create", "order")

    def test_max_steps_truncates(self):
        tracer = FlowTracer(self._context(), max_steps=1)
        flow = tracer.trace_flows_from_entry_points([self._entry()])[0]
        assert len(flow.definition_steps) == 1
        assert flow.truncated
        assert tracer.truncated == ["submit-order-flow"]
        assert flow.interaction_ids == [100]

    def test_max_depth_bounds_walk(self):
        tracer = FlowTracer(self._context(), max_depth=1)
        steps = tracer.trace_definition_flow(10)
        assert [(s.from_definition_id, s.to_definition_id) for s in steps] == [(10, 20)]

    def test_cycles_terminate(self):
        ctx = TracingContext.build(
            {1: [2], 2: [1]},
            [(1, "a", [1]), (2, "b", [2])],
            [_interaction(5, 1, 2), _interaction(6, 2, 1)],
        )
        steps = FlowTracer(ctx).trace_definition_flow(1)
        assert [(s.from_definition_id, s.to_definition_id) for s in steps] == [(1, 2), (2, 1)]

    def test_no_steps_no_flow(self):
        ctx = TracingContext.build({}, [(1, "a", [1])], [])
        entry = EntryPointModule(1, "a", "a", [EntryMember(1, "idle", "function")])
        assert FlowTracer(ctx).trace_flows_from_entry_points([entry]) == []


class TestNaming:
    def test_flow_name_classified(self):
        assert flow_name(EntryMember(1, "post_order", "function", "create", "order")) == "CreateOrderFlow"

    def test_flow_name_cleaned(self):
        assert flow_name(EntryMember(1, "onClickController", "method", "view")) == "ViewClickFlow"
        assert flow_name(EntryMember(1, "Checkout.handlePayment", "method")) == "PaymentFlow"
        assert flow_name(EntryMember(1, "importFlow", "function")) == "importFlow"

    def test_flow_slug(self):
        assert flow_slug("CreateOrderFlow") == "create-order-flow"

    def test_infer_stakeholder(self):
        assert infer_stakeholder("project.shop.admin.reports") == "admin"
        assert infer_stakeholder("project.shop.api.orders") == "external"
        assert infer_stakeholder("project.jobs.nightly") == "system"
        assert infer_stakeholder("project.tools.cli") == "developer"
        assert infer_stakeholder("project.shop.models") == "user"

    def test_slug_helpers(self):
        assert slugify("Reports calls Storage!") == "reports-calls-storage"
        assert slugify("!!!", "internal") == "internal"
        used = {"a"}
        assert unique_slug("a", used) == "a-2"
        assert unique_slug("a", used) == "a-3"


# ── Classification ──

class TestClassification:
    CANDIDATES = [
        Candidate(1, "app.api", 10, "post_order", "function"),
        Candidate(1, "app.api", 11, "helper", "function"),
        Candidate(2, "app.jobs", 20, "run", "function"),
    ]

    def test_parse_fenced_csv(self):
        text = (
            "Here you go:\n```csv\n"
            "module_id,member_name,is_entry_point,action_type,target_entity,stakeholder,reason\n"
            "1,post_order,true,create,order,user,handles POST\n"
            "1,helper,false,,,,internal helper\n"
            "not,a,row\n"
            "9,ghost,true,view,x,user,unknown candidate\n"
            "```\n"
        )
        results = parse_classifications(text, self.CANDIDATES)
        assert results[0] == EntryPoint(1, 10, "post_order", "create", "order", "user")
        assert isinstance(results[1], NotEntryPoint)
        assert results[1].reason == "internal helper"
        assert results[2] == NotEntryPoint(2, 20, "run", "missing from response")

    def test_member_with_several_entry_rows(self):
        text = (
            "1,post_order,true,create,order,user,a\n"
            "1,post_order,true,create,payment,admin,b\n"
        )
        results = parse_classifications(text, self.CANDIDATES[:1])
        assert [r.target_entity for r in results] == ["order", "payment"]

    def test_unknown_values_dropped(self):
        results = parse_classifications('1,post_order,TRUE,launch,"order",robot,x\n', self.CANDIDATES[:1])
        assert results[0].action_type is None
        assert results[0].stakeholder is None
        assert results[0].target_entity == "order"

    def test_null_llm_falls_back(self):
        results = asyncio.run(classify_candidates(NullLLMService(), self.CANDIDATES))
        assert all(isinstance(r, NotEntryPoint) for r in results)
        assert {r.reason for r in results} == {"llm unavailable"}

    def test_scripted_llm_batches(self):
        llm = ScriptedLLM({"run": ("process", "job", "system")})
        results = asyncio.run(classify_candidates(llm, self.CANDIDATES, LLMConfig(batch_size=2)))
        assert llm.calls == 2
        assert [type(r).__name__ for r in results] == ["NotEntryPoint", "NotEntryPoint", "EntryPoint"]


class TestBatchRunner:
    def test_order_preserved(self):
        async def worker(batch):
            return [x * 10 for x in batch]

        results = asyncio.run(run_batches([1, 2, 3, 4, 5], 2, worker, lambda b: []))
        assert results == [10, 20, 30, 40, 50]

    def test_timeout_uses_fallback(self):
        async def slow(batch):
            await asyncio.sleep(1)
            return batch

        results = asyncio.run(run_batches([1, 2], 5, slow, lambda b: ["fallback"] * len(b), timeout=0.01))
        assert results == ["fallback", "fallback"]

    def test_retry_then_succeed(self):
        attempts = []

        async def flaky(batch):
            attempts.append(1)
            if len(attempts) == 1:
                raise LLMError.request_failed("rate limited")
            return batch

        results = asyncio.run(run_batches([1], 5, flaky, lambda b: [], retries=1))
        assert results == [1]
        assert len(attempts) == 2

    def test_connection_error_uses_fallback(self):
        async def offline(batch):
            raise ConnectionError("connection refused")

        results = asyncio.run(run_batches([1, 2, 3], 2, offline, lambda b: [None] * len(b), retries=1))
        assert results == [None, None, None]

    def test_failed_batch_does_not_affect_others(self):
        async def worker(batch):
            if 3 in batch:
                raise LLMError.malformed_response("garbage")
            return batch

        results = asyncio.run(run_batches([1, 2, 3, 4], 2, worker, lambda b: [0] * len(b)))
        assert results == [1, 2, 0, 0]

    def test_batch_size_must_be_positive(self):
        async def worker(batch):
            return batch

        with pytest.raises(ValueError):
            asyncio.run(run_batches([1], 0, worker, lambda b: []))


# ── Validation ──

class TestValidator:
    MEMBERS = {1: {10, 11}}

    def test_valid_flow(self):
        flow = _flow("ok", [100], entry_point_module_id=1, entry_point_id=10)
        report = validate_flows([flow], [100], self.MEMBERS)
        assert report.valid == [flow]
        assert report.issues == []

    def test_entry_point_outside_module(self):
        flow = _flow("bad", [100], entry_point_module_id=1, entry_point_id=99)
        report = validate_flows([flow], [100], self.MEMBERS)
        assert report.valid == []
        assert [i.code for i in report.errors] == ["invalid_entry_point"]

    def test_unknown_interaction(self):
        report = validate_flows([_flow("bad", [100, 555])], [100], self.MEMBERS)
        assert [i.code for i in report.errors] == ["invalid_interaction_id"]
        assert "555" in report.errors[0].message

    def test_too_many_steps(self):
        report = validate_flows([_flow("long", [100], steps=5)], [100], self.MEMBERS, max_steps=4)
        assert [i.code for i in report.errors] == ["max_steps_exceeded"]

    def test_journey_steps_not_limited(self):
        report = validate_flows([_flow("journey", [100], tier=2, steps=5)], [100], self.MEMBERS, max_steps=4)
        assert report.errors == []

    def test_duplicate_slug(self):
        report = validate_flows([_flow("same", [100]), _flow("same", [100])], [100], self.MEMBERS)
        assert len(report.valid) == 1
        assert [i.code for i in report.errors] == ["duplicate_slug"]

    def test_warnings_keep_flow(self):
        flow = _flow("empty", [], description="")
        report = validate_flows([flow], [], self.MEMBERS, truncated_slugs=["empty"])
        assert report.valid == [flow]
        assert sorted(i.code for i in report.warnings) == [
            "max_steps_exceeded", "missing_description", "no_steps",
        ]


# ── Generation and persistence ──

class TestGenerator:
    def test_traced_flow_set(self, traced_db):
        db = traced_db
        slugs = sorted(f.slug for f in db.list_flows())
        assert slugs == [
            "check-orders-calls-orders",
            "create-order-flow",
            "delete-order-flow",
            "order-create-delete-journey",
            "reports-calls-storage",
        ]

    def test_traced_flow_steps(self, traced_db):
        db = traced_db
        create = db.get_flow_by_slug("create-order-flow")
        assert create.tier == 1
        assert create.action_type == "create"
        assert create.entry_point_id == definition_id(db, "post_order")
        assert len(db.get_flow_interaction_ids(create.flow_id)) == 3
        assert db.get_flow_definition_steps(create.flow_id) == [
            (definition_id(db, "post_order"), definition_id(db, "create_order")),
            (definition_id(db, "create_order"), definition_id(db, "Order")),
            (definition_id(db, "create_order"), definition_id(db, "save")),
        ]
        delete = db.get_flow_by_slug("delete-order-flow")
        assert len(db.get_flow_interaction_ids(delete.flow_id)) == 2

    def test_journey_references_constituents(self, traced_db):
        db = traced_db
        journey = db.get_flow_by_slug("order-create-delete-journey")
        assert journey.tier == 2
        assert sorted(db.get_subflow_ids(journey.flow_id)) == sorted([
            db.get_flow_by_slug("create-order-flow").flow_id,
            db.get_flow_by_slug("delete-order-flow").flow_id,
        ])
        assert db.get_flow_interaction_ids(journey.flow_id) == db.get_flow_interaction_ids(
            db.get_flow_by_slug("create-order-flow").flow_id
        )

    def test_generation_counts(self, indexed_db):
        result = asyncio.run(FlowGenerator(indexed_db, ScriptedLLM(SHOP_ENTRY_POINTS)).generate())
        assert result.entry_point_modules == 1
        assert result.traced == 2
        assert result.removed_by_set_dedup == 0
        assert result.removed_by_overlap_dedup == 0
        assert result.gap_flows == 2
        assert result.journeys == 1
        assert result.persisted == 5
        assert result.affected_feature_ids == []

    def test_features_relinked_by_slug(self, traced_db):
        db = traced_db
        old = db.get_flow_by_slug("create-order-flow")
        feature = db.insert_feature("Ordering", "ordering")
        db.add_feature_flow(feature.feature_id, old.flow_id)
        gap_feature = db.insert_feature("Reporting", "reporting")
        db.add_feature_flow(gap_feature.feature_id, db.get_flow_by_slug("reports-calls-storage").flow_id)

        # without a classifier only gap flows survive; the traced slug disappears
        result = asyncio.run(FlowGenerator(db, NullLLMService()).generate())

        assert result.affected_feature_ids == sorted([feature.feature_id, gap_feature.feature_id])
        assert db.get_feature_flow_ids(feature.feature_id) == []
        assert db.get_feature_flow_ids(gap_feature.feature_id) == [
            db.get_flow_by_slug("reports-calls-storage").flow_id
        ]

    def test_regeneration_relinks_same_slug(self, traced_db):
        db = traced_db
        feature = db.insert_feature("Ordering", "ordering")
        db.add_feature_flow(feature.feature_id, db.get_flow_by_slug("create-order-flow").flow_id)

        asyncio.run(FlowGenerator(db, ScriptedLLM(SHOP_ENTRY_POINTS)).generate())

        new = db.get_flow_by_slug("create-order-flow")
        assert db.get_feature_flow_ids(feature.feature_id) == [new.flow_id]

    def test_same_signature_entry_points_keep_full_coverage(self, indexed_db):
        db = indexed_db
        llm = ScriptedLLM({
            "post_order": ("create", "order", "user"),
            "daily_report": ("create", "order", "admin"),
        })
        result = asyncio.run(FlowGenerator(db, llm).generate())

        assert [i.code for i in result.issues if i.code == "duplicate_slug"] == []
        flows = {f.slug: f for f in db.list_flows()}
        assert {"create-order-flow", "create-order-flow-2"} <= set(flows)
        assert {flows["create-order-flow"].entry_point_id, flows["create-order-flow-2"].entry_point_id} == {
            definition_id(db, "post_order"),
            definition_id(db, "daily_report"),
        }

        covered = {i for f in flows.values() for i in db.get_flow_interaction_ids(f.flow_id)}
        assert covered == {i.interaction_id for i in db.list_interactions()}

        journey = flows["order-create-journey"]
        assert len(db.get_subflow_ids(journey.flow_id)) == 2
