"""
Tests for the quality checks and their automatic fixes.
"""

from codegraph.store.models import Interaction
from codegraph.verify.checker import QualityChecker
from codegraph.verify.checks import CheckContext, check_fan_in, check_self_loops

from conftest import module_id


def _categories(result):
    return sorted(i.category for i in result.issues)


def _interaction_between(db, from_path, to_path):
    return db.get_interaction_by_modules(module_id(db, from_path), module_id(db, to_path))


class TestChecks:
    def test_clean_graph_passes(self, indexed_db):
        result = QualityChecker(indexed_db).run()
        assert result.passed
        assert result.issues == []
        assert result.stats["interactions_checked"] == 5

    def test_self_loop(self, indexed_db):
        db = indexed_db
        storage = module_id(db, "project.shop.storage")
        loop = db.insert_interaction(Interaction(from_module_id=storage, to_module_id=storage))
        checker = QualityChecker(db)

        result = checker.run()
        assert not result.passed
        issue = result.errors[0]
        assert issue.category == "self-loop-interaction"
        assert issue.fix_action == "remove-interaction"
        assert issue.entity_id == loop.interaction_id

        assert checker.apply_fixes(result.issues) == 1
        assert db.get_interaction(loop.interaction_id) is None
        assert checker.run().passed

    def test_false_bidirectional(self, indexed_db):
        db = indexed_db
        edge = _interaction_between(db, "project.shop.api.orders", "project.shop.services.orders")
        db.set_interaction_direction(edge.interaction_id, "bi")
        checker = QualityChecker(db)

        result = checker.run()
        assert result.passed
        assert _categories(result) == ["false-bidirectional"]

        assert checker.apply_fixes(result.issues) == 1
        assert db.get_interaction(edge.interaction_id).direction == "uni"

    def test_ungrounded_inferred(self, indexed_db):
        db = indexed_db
        inferred = db.insert_interaction(Interaction(
            from_module_id=module_id(db, "project.shop.models"),
            to_module_id=module_id(db, "project.shop.admin.reports"),
            source="llm-inferred",
        ))
        checker = QualityChecker(db)

        result = checker.run()
        assert _categories(result) == ["ungrounded-inferred"]
        assert result.issues[0].severity == "warning"

        checker.apply_fixes(result.issues)
        assert db.get_interaction(inferred.interaction_id) is None

    def test_inferred_with_call_edge_is_grounded(self, indexed_db):
        db = indexed_db
        edge = _interaction_between(db, "project.shop.admin.reports", "project.shop.storage")
        db.execute(
            "UPDATE interactions SET source = 'llm-inferred' WHERE interaction_id = ?",
            (edge.interaction_id,),
        )
        assert QualityChecker(db).run().issues == []

    def test_symbol_mismatch_rebuilt(self, indexed_db):
        db = indexed_db
        edge = _interaction_between(db, "project.shop.services.orders", "project.shop.storage")
        db.set_interaction_symbols(edge.interaction_id, ["persist", "flush"])
        checker = QualityChecker(db)

        result = checker.run()
        assert _categories(result) == ["interaction-symbol-mismatch"]
        assert result.issues[0].fix_action == "rebuild-symbols"

        assert checker.apply_fixes(result.issues) == 1
        assert db.get_interaction(edge.interaction_id).symbols == ["save"]

    def test_partial_symbol_match_is_fine(self, indexed_db):
        db = indexed_db
        edge = _interaction_between(db, "project.shop.services.orders", "project.shop.storage")
        db.set_interaction_symbols(edge.interaction_id, ["save", "flush"])
        assert QualityChecker(db).run().issues == []

    def test_ghost_member(self, indexed_db):
        db = indexed_db
        db.execute("PRAGMA foreign_keys=OFF")
        db.execute(
            "INSERT INTO module_members (definition_id, module_id, assigned_at) VALUES (9999, 1, 'now')"
        )
        db.execute("PRAGMA foreign_keys=ON")
        checker = QualityChecker(db)

        result = checker.run()
        assert not result.passed
        assert _categories(result) == ["ghost-member"]
        assert result.issues[0].entity_id == 9999

        assert checker.apply_fixes(result.issues) == 1
        assert checker.run().passed

    def test_ghost_flow_step(self, indexed_db):
        db = indexed_db
        edge = _interaction_between(db, "project.shop.admin.reports", "project.shop.storage")
        db.execute("PRAGMA foreign_keys=OFF")
        db.execute("DELETE FROM interactions WHERE interaction_id = ?", (edge.interaction_id,))
        db.execute("PRAGMA foreign_keys=ON")
        checker = QualityChecker(db)

        result = checker.run()
        assert "ghost-flow-step" in _categories(result)

        assert checker.apply_fixes(result.issues) >= 1
        assert db.execute(
            "SELECT COUNT(*) FROM flow_steps WHERE interaction_id = ?", (edge.interaction_id,)
        ).fetchone()[0] == 0

    def test_custom_check_list(self, indexed_db):
        db = indexed_db
        storage = module_id(db, "project.shop.storage")
        db.insert_interaction(Interaction(from_module_id=storage, to_module_id=storage, direction="bi"))
        result = QualityChecker(db, checks=[check_self_loops]).run()
        assert _categories(result) == ["self-loop-interaction"]
        assert result.stats["errors"] == 1
        assert result.stats["fixable"] == 1


class TestFanIn:
    def _context(self, extra=()):
        interactions = [
            Interaction(interaction_id=n, from_module_id=n, to_module_id=100, source="llm-inferred")
            for n in range(1, 11)
        ]
        interactions += [
            Interaction(interaction_id=50 + n, from_module_id=1, to_module_id=200 + n, source="llm-inferred")
            for n in range(10)
        ]
        interactions += list(extra)
        return CheckContext(interactions=interactions, call_edges=set(), member_names={})

    def test_outlier_flagged(self):
        issues = check_fan_in(None, self._context())
        assert len(issues) == 10
        assert {i.details["module_id"] for i in issues} == {100}
        assert all(i.details["fan_in"] == 10 for i in issues)
        assert all(i.fix_action is None for i in issues)

    def test_ast_inbound_suppresses(self):
        ast_edge = Interaction(interaction_id=99, from_module_id=300, to_module_id=100, source="ast")
        assert check_fan_in(None, self._context([ast_edge])) == []

    def test_below_floor_not_flagged(self):
        interactions = [
            Interaction(interaction_id=n, from_module_id=n, to_module_id=100, source="llm-inferred")
            for n in range(1, 6)
        ]
        interactions.append(Interaction(interaction_id=9, from_module_id=1, to_module_id=200, source="llm-inferred"))
        ctx = CheckContext(interactions=interactions, call_edges=set(), member_names={})
        assert check_fan_in(None, ctx) == []

    def test_no_inferred(self):
        ctx = CheckContext(interactions=[Interaction(interaction_id=1)], call_edges=set(), member_names={})
        assert check_fan_in(None, ctx) == []
