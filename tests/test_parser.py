"""
Tests for the Python parser front-end and the parser registry.
"""

import pytest

from codegraph.errors import ErrorCode, ParseError
from codegraph.parsers.python import PythonParser
from codegraph.parsers.registry import get_parser, supported_extensions


def _refs_by_source(parsed):
    return {r.source: r for r in parsed.references}


class TestDefinitions:
    def test_functions_classes_and_methods(self):
        source = """
def foo(x):
    return x

class Order:
    def total(self):
        return 0

    async def _refresh(self):
        pass
"""
        parsed = PythonParser().parse(source, "shop/models.py")
        kinds = {d.name: d.kind for d in parsed.definitions}
        assert kinds == {
            "foo": "function",
            "Order": "class",
            "Order.total": "method",
            "Order._refresh": "method",
        }

    def test_constants_and_variables(self):
        parsed = PythonParser().parse("MAX_ITEMS = 10\ncache: dict = {}\n__version__ = '1'\n", "m.py")
        kinds = {d.name: d.kind for d in parsed.definitions}
        assert kinds == {"MAX_ITEMS": "const", "cache": "variable"}

    def test_export_rules(self):
        source = "__all__ = ['_public']\ndef _public(): pass\ndef _private(): pass\ndef open_(): pass\n"
        parsed = PythonParser().parse(source, "m.py")
        exported = {d.name: d.is_exported for d in parsed.definitions}
        assert exported == {"_public": True, "_private": False, "open_": True}

    def test_base_classes(self):
        parsed = PythonParser().parse("class A(Base, mixins.Audit, object):\n    pass\n", "m.py")
        cls = parsed.definitions[0]
        assert cls.extends_name == "Base"
        assert cls.implements == ["mixins.Audit"]

    def test_line_ranges(self):
        parsed = PythonParser().parse("\n\ndef foo():\n    a = 1\n    return a\n", "m.py")
        foo = parsed.definitions[0]
        assert (foo.line_start, foo.line_end) == (3, 5)

    def test_syntax_error_raises(self):
        with pytest.raises(ParseError) as exc:
            PythonParser().parse("def foo(:\n", "bad.py")
        assert exc.value.code == ErrorCode.PARSE_SYNTAX_ERROR
        assert exc.value.details["path"] == "bad.py"


class TestReferences:
    KNOWN = {"shop/models.py", "shop/storage.py", "shop/services/orders.py"}

    def test_from_import_resolves_and_records_calls(self):
        source = "from shop.models import Order\n\ndef make():\n    return Order(1, 2)\n"
        parsed = PythonParser().parse(source, "shop/services/orders.py", self.KNOWN)
        ref = parsed.references[0]
        assert ref.type == "from-import"
        assert ref.resolved_path == "shop/models.py"
        assert not ref.is_external

        sym = ref.imports[0]
        assert (sym.name, sym.local_name, sym.kind) == ("Order", "Order", "named")
        usage = sym.usages[0]
        assert usage.context == "call"
        assert usage.argument_count == 2
        assert usage.is_constructor_call

    def test_external_import(self):
        parsed = PythonParser().parse("import json\njson.dumps({})\n", "m.py", self.KNOWN)
        ref = parsed.references[0]
        assert ref.is_external
        assert ref.resolved_path is None
        assert ref.imports[0].name == "dumps"

    def test_namespace_import_symbols_per_attribute(self):
        source = "import shop.storage as st\n\ndef f():\n    st.save(1)\n    st.load('k')\n    st.save(2)\n"
        parsed = PythonParser().parse(source, "shop/api/x.py", self.KNOWN)
        ref = parsed.references[0]
        assert ref.type == "import"
        assert ref.resolved_path == "shop/storage.py"
        by_name = {s.name: s for s in ref.imports}
        assert set(by_name) == {"save", "load"}
        assert by_name["save"].kind == "namespace"
        assert by_name["save"].local_name == "st.save"
        assert len(by_name["save"].usages) == 2

    def test_relative_import(self):
        parsed = PythonParser().parse("from ..models import Order\n", "shop/services/orders.py", self.KNOWN)
        assert parsed.references[0].resolved_path == "shop/models.py"

    def test_from_package_import_submodule(self):
        source = "from shop import storage\n\nstorage.save(1)\n"
        parsed = PythonParser().parse(source, "main.py", self.KNOWN)
        refs = _refs_by_source(parsed)
        ref = refs["shop.storage"]
        assert ref.type == "import"
        assert ref.resolved_path == "shop/storage.py"
        assert [s.name for s in ref.imports] == ["save"]

    def test_import_all(self):
        parsed = PythonParser().parse("from shop.models import *\n", "m.py", self.KNOWN)
        ref = parsed.references[0]
        assert ref.type == "import-all"
        assert ref.imports[0].kind == "import-all"

    def test_dotted_import_call_is_not_method_call(self):
        source = "import shop.storage\n\nshop.storage.save(1)\n"
        parsed = PythonParser().parse(source, "m.py", self.KNOWN)
        usage = parsed.references[0].imports[0].usages[0]
        assert usage.context == "call"
        assert not usage.is_method_call

    def test_method_call_receiver(self):
        source = "from shop.models import Order\n\nOrder.total(None)\n"
        parsed = PythonParser().parse(source, "m.py", self.KNOWN)
        usage = parsed.references[0].imports[0].usages[0]
        assert usage.is_method_call
        assert usage.receiver_name == "Order"
        assert not usage.is_constructor_call


class TestInternalUsages:
    def test_same_file_function_and_self_method_calls(self):
        source = """
def helper():
    return 1

class Service:
    def run(self):
        return self.step() + helper()

    def step(self):
        return 2
"""
        parsed = PythonParser().parse(source, "m.py")
        used = {u.definition_name: u for u in parsed.internal_usages}
        assert set(used) == {"helper", "Service.step"}
        assert used["Service.step"].usages[0].context == "call"

    def test_imported_name_shadows_local(self):
        source = "from other import helper\n\ndef helper():\n    pass\n\nhelper()\n"
        parsed = PythonParser().parse(source, "m.py")
        assert parsed.internal_usages == []


class TestRegistry:
    def test_python_detected(self):
        p = get_parser("shop/models.py")
        assert p is not None
        assert p.language == "python"

    def test_unknown_extension(self):
        assert get_parser("main.rs") is None

    def test_supported_extensions(self):
        assert ".py" in supported_extensions()
