import pytest

from arbor.arbor_compiler import (
    avoid_recursive_property_calls,
    downgrade_reference,
    downgrade_remaining,
    fold_binary,
    make_array,
    make_call,
    make_deferred_arguments,
    make_lambda,
    make_literal,
    make_object,
    make_property,
    make_reference,
    make_template,
    upgrade_reference,
)
from arbor.arbor_datatypes import ArborSyntaxError, Code, Location, Op, code


def lit(value):
    return make_literal(value)


def test_reference_classification():
    assert make_reference("tree:") == (Op.BUILTIN, "tree:")
    assert make_reference("map") == (Op.UNDETERMINED, "map")
    assert make_reference("index.html") == (Op.SCOPE, "index.html")
    assert make_reference("_private") == (Op.SCOPE, "_private")
    assert make_reference("1abc") == (Op.SCOPE, "1abc")


def test_upgrade_and_downgrade_only_touch_undetermined():
    undetermined = make_reference("name")
    assert upgrade_reference(undetermined) == (Op.BUILTIN, "name")
    assert downgrade_reference(undetermined) == (Op.SCOPE, "name")
    scope_ref = make_reference("a.b")
    assert upgrade_reference(scope_ref) is scope_ref


def test_downgrade_remaining_reaches_nested_nodes():
    node = code(Op.ADDITION, make_reference("a"), code(Op.CALL, code(Op.BUILTIN, "f"), make_reference("b")))
    assert downgrade_remaining(node) == (
        Op.ADDITION, (Op.SCOPE, "a"), (Op.CALL, (Op.BUILTIN, "f"), (Op.SCOPE, "b")),
    )


def test_make_call_variants():
    target = make_reference("fn")
    assert make_call(target, [lit(1)]) == (Op.CALL, (Op.BUILTIN, "fn"), (Op.LITERAL, 1))
    assert make_call(target, [Op.TRAVERSE, lit("k")]) == (Op.TRAVERSE, (Op.SCOPE, "fn/"), (Op.LITERAL, "k"))
    assert make_call(target, [Op.TRAVERSE]) == (Op.UNPACK, (Op.SCOPE, "fn/"))
    strings = lit(("a", "b"))
    concat = code(Op.CONCAT, lit(1))
    assert make_call(target, [Op.TEMPLATE, strings, concat]) == (Op.CALL, (Op.BUILTIN, "fn"), strings, concat)


def test_make_call_rejects_non_code_target():
    with pytest.raises(ArborSyntaxError):
        make_call("not code", [])


def test_make_call_spans_target_and_arguments():
    source = "fn(1)"
    target = make_reference("fn", Location(source, 0, 2))
    node = make_call(target, [lit(1)], Location(source, 2, 5))
    assert node.location.text == "fn(1)"


def test_make_array_partitions_spreads():
    spread = code(Op.SPREAD, make_reference("xs"))
    assert make_array([lit(1), lit(2)]) == (Op.ARRAY, (Op.LITERAL, 1), (Op.LITERAL, 2))
    assert make_array([lit(1), spread, lit(2)]) == (
        Op.MERGE, (Op.ARRAY, (Op.LITERAL, 1)), (Op.UNDETERMINED, "xs"), (Op.ARRAY, (Op.LITERAL, 2)),
    )
    assert make_array([]) == (Op.ARRAY,)


def test_make_object_inlines_literal_spreads_and_merges_others():
    inner = code(Op.OBJECT, ("a", lit(1)))
    assert make_object([(Op.SPREAD, inner), ("b", lit(2))]) == (
        Op.OBJECT, ("a", (Op.LITERAL, 1)), ("b", (Op.LITERAL, 2)),
    )
    other = make_reference("other.yaml")
    assert make_object([(Op.SPREAD, other), ("b", lit(2))]) == (
        Op.MERGE, (Op.SCOPE, "other.yaml"), (Op.OBJECT, ("b", (Op.LITERAL, 2))),
    )


def test_make_object_stores_literal_getters_as_properties():
    getter = code(Op.GETTER, lit(1))
    assert make_object([("a", getter)]) == (Op.OBJECT, ("a", (Op.LITERAL, 1)))
    live = code(Op.GETTER, code(Op.SCOPE, "x"))
    assert make_object([("a", live)]) == (Op.OBJECT, ("a", live))


def test_avoid_recursive_property_calls():
    node = code(Op.ADDITION, make_reference("count"), lit(1))
    rewritten = avoid_recursive_property_calls(node, "count")
    assert rewritten == (Op.ADDITION, (Op.INHERITED, "count"), (Op.LITERAL, 1))
    # A lambda that declares the same name shadows it
    lam = make_lambda(("count",), make_reference("count"))
    assert avoid_recursive_property_calls(lam, "count") == lam
    # Trailing slashes don't hide a self reference
    assert avoid_recursive_property_calls(code(Op.SCOPE, "sub/"), "sub") == (Op.INHERITED, "sub/")


def test_make_property_downgrades_leftovers():
    key, value = make_property("total", code(Op.ADDITION, make_reference("a"), make_reference("total")))
    assert key == "total"
    assert value == (Op.ADDITION, (Op.SCOPE, "a"), (Op.INHERITED, "total"))


def test_make_deferred_arguments_wraps_non_literals():
    deferred = make_deferred_arguments([lit(1), make_reference("x")])
    assert deferred[0] == (Op.LITERAL, 1)
    assert deferred[1] == (Op.LAMBDA, (), (Op.SCOPE, "x"))


def test_fold_binary_is_left_associative():
    node = fold_binary(lit(1), [("-", lit(2)), ("-", lit(3))])
    assert node == (Op.SUBTRACTION, (Op.SUBTRACTION, (Op.LITERAL, 1), (Op.LITERAL, 2)), (Op.LITERAL, 3))
    short = fold_binary(lit(1), [("??", make_reference("x"))])
    assert short == (Op.NULLISH_COALESCING, (Op.LITERAL, 1), (Op.LAMBDA, (), (Op.SCOPE, "x")))


def test_fold_binary_rejects_unknown_operator():
    with pytest.raises(ArborSyntaxError):
        fold_binary(lit(1), [("<>", lit(2))])


def test_make_template():
    node = make_template(["Hello, ", "!"], [make_reference("name")])
    assert node == (Op.TEMPLATE, (Op.LITERAL, ("Hello, ", "!")), (Op.CONCAT, (Op.UNDETERMINED, "name")))
    assert isinstance(node, Code)
