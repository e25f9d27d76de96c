import io
import math

import pytest

from duck.duck_datatypes import StructInstance
from duck.duck_runtime import ScriptRunner


async def run_duck(src: str, **kwargs):
    runner = ScriptRunner(**kwargs)
    return await runner.handle_script(src)


async def value_of(expr: str, **kwargs):
    res = await run_duck(f"quack [{expr}]", **kwargs)
    assert res.status == 'success', res.error_message
    return res.value


def stdout(res):
    return [e['message'] for e in res.side_effects if e['topics'] == ['stdout']]


def assert_error(res, kind: str, contains: str | None = None):
    assert res.status == 'error', f"expected error, got {res.status} with value {res.value!r}"
    assert res.error_kind == kind, res.error_message
    if contains:
        assert contains in (res.error_message or "")


# --- Output ---

@pytest.mark.asyncio
async def test_print_joins_arguments_with_spaces():
    res = await run_duck('quack [print "a" 1 true [1, "b"]]')
    assert stdout(res) == ['a 1 true [1, "b"]']


@pytest.mark.asyncio
async def test_print_writes_to_live_stream():
    out = io.StringIO()
    res = await run_duck('quack [print "hello"]', stdout=out)
    assert res.status == 'success'
    assert out.getvalue() == "hello\n"


@pytest.mark.asyncio
async def test_input_reads_lines_and_returns_nil_at_eof():
    src = """
    quack [let first be input("Name? ")]
    quack [let second be input()]
    quack [print first second]
    """
    out = io.StringIO()
    res = await run_duck(src, stdin=io.StringIO("Donald\n"), stdout=out)
    assert res.status == 'success', res.error_message
    assert stdout(res) == ["Donald nil"]
    assert out.getvalue().startswith("Name? ")


# --- Lists and sequences ---

@pytest.mark.asyncio
async def test_len_of_lists_and_strings():
    assert await value_of("len([1, 2, 3])") == 3
    assert await value_of('len("duck")') == 4


@pytest.mark.asyncio
async def test_push_and_pop_mutate_in_place():
    res = await run_duck("quack [let xs be [1]] quack [push xs 2] quack [print pop(xs)] quack [print xs]")
    assert stdout(res) == ["2", "[1]"]


@pytest.mark.asyncio
async def test_pop_on_empty_list():
    assert_error(await run_duck("quack [pop([])]"), "IndexOutOfRange")


@pytest.mark.asyncio
async def test_range_forms():
    assert await value_of("range(3)") == [0, 1, 2]
    assert await value_of("range(2, 5)") == [2, 3, 4]
    assert await value_of("range(10, 0, -4)") == [10, 6, 2]
    assert_error(await run_duck("quack [range(1, 5, 0)]"), "ValueError")
    assert_error(await run_duck("quack [range(1.5)]"), "TypeError")


@pytest.mark.asyncio
async def test_list_results_compare_equal_inside_the_language():
    assert await value_of("range(0, 5) == [0, 1, 2, 3, 4] and pow(2, 8) == 256") is True


@pytest.mark.asyncio
async def test_sort_and_reverse_return_new_values():
    src = """
    quack [let xs be [3, 1, 2]]
    quack [print sort(xs) reverse(xs) xs]
    quack [print reverse("abc") sort(["b", "a"])]
    """
    res = await run_duck(src)
    assert stdout(res) == ["[1, 2, 3] [2, 1, 3] [3, 1, 2]", 'cba ["a", "b"]']


@pytest.mark.asyncio
async def test_sort_rejects_mixed_lists():
    assert_error(await run_duck('quack [sort([1, "a"])]'), "TypeError")


@pytest.mark.asyncio
async def test_slice_contains_and_index_of():
    assert await value_of('slice("duckling", 0, 4)') == "duck"
    assert await value_of("slice([1, 2, 3], 1)") == [2, 3]
    assert await value_of('contains("quack", "ack")') is True
    assert await value_of("contains([1, [2]], [2])") is True
    assert await value_of("index-of([5, 6], 6)") == 1
    assert await value_of('index-of("duck", "z")') == -1


@pytest.mark.asyncio
async def test_join_uses_display_form():
    assert await value_of('join([1, "a", true], "-")') == "1-a-true"


# --- Higher-order ---

@pytest.mark.asyncio
async def test_map_filter_fold():
    assert await value_of("map([1, 2, 3], x -> x * 2)") == [2, 4, 6]
    assert await value_of("filter([1, 2, 3, 4], x -> x % 2 == 0)") == [2, 4]
    assert await value_of("fold([1, 2, 3], 0, [acc, x] -> acc + x)") == 6


@pytest.mark.asyncio
async def test_find_any_all():
    assert await value_of("find([1, 5, 9], x -> x > 3)") == 5
    assert await value_of("find([1], x -> x > 3)") is None
    assert await value_of("any([1, 5], x -> x > 3)") is True
    assert await value_of("all([1, 5], x -> x > 3)") is False


@pytest.mark.asyncio
async def test_named_function_as_argument():
    src = """
    quack [define double taking [n] as quack [return n * 2]]
    quack [map([1, 2], double)]
    """
    res = await run_duck(src)
    assert res.value == [2, 4]


@pytest.mark.asyncio
async def test_predicates_must_return_booleans():
    assert_error(await run_duck("quack [filter([1], x -> x)]"), "TypeError", "predicate")


@pytest.mark.asyncio
async def test_callback_arity_is_checked():
    assert_error(await run_duck("quack [map([1], [a, b] -> a)]"), "ArityMismatch")


# --- Strings ---

@pytest.mark.asyncio
async def test_string_functions():
    assert await value_of('upper("duck")') == "DUCK"
    assert await value_of('lower("DUCK")') == "duck"
    assert await value_of('trim("  duck \\n")') == "duck"
    assert await value_of('split("a,b,c", ",")') == ["a", "b", "c"]
    assert await value_of('split("ab", "")') == ["a", "b"]
    assert await value_of('chars("ab")') == ["a", "b"]
    assert await value_of('replace("quack quack", "qu", "h")') == "hack hack"
    assert await value_of('starts-with("quack", "qu")') is True
    assert await value_of('ends-with("quack", "qu")') is False


@pytest.mark.asyncio
async def test_string_functions_reject_other_types():
    assert_error(await run_duck("quack [upper(1)]"), "TypeError", "upper expects a string")


# --- Math ---

@pytest.mark.asyncio
async def test_math_functions():
    assert await value_of("floor(-1.5)") == -2
    assert await value_of("ceil(1.2)") == 2
    assert await value_of("abs(-3)") == 3
    assert await value_of("sqrt(16)") == 4
    assert await value_of("pow(2, 10)") == 1024
    assert await value_of("min(3, 1, 2)") == 1
    assert await value_of("max([3, 7, 2])") == 7


@pytest.mark.parametrize("expr, expected", [
    ("round(2.5)", 3),
    ("round(-2.5)", -3),
    ("round(2.4)", 2),
])
@pytest.mark.asyncio
async def test_round_halves_away_from_zero(expr, expected):
    assert await value_of(expr) == expected


@pytest.mark.asyncio
async def test_math_domain_errors():
    assert_error(await run_duck("quack [sqrt(-1)]"), "ValueError")
    assert_error(await run_duck("quack [pow(-8, 0.5)]"), "ValueError")
    assert_error(await run_duck("quack [min([])]"), "ValueError")


@pytest.mark.asyncio
async def test_random_ranges():
    for _ in range(20):
        r = await value_of("random()")
        assert 0 <= r < 1
        n = await value_of("random(1, 3)")
        assert n in (1, 2, 3)
    assert_error(await run_duck("quack [random(5, 1)]"), "ValueError")


@pytest.mark.asyncio
async def test_constants():
    assert await value_of("PI") == pytest.approx(math.pi)
    assert await value_of("E") == pytest.approx(math.e)
    res = await run_duck("quack [print INFINITY]")
    assert stdout(res) == ["infinity"]


# --- Conversion ---

@pytest.mark.asyncio
async def test_conversions():
    assert await value_of('number(" 3.5 ")') == 3.5
    assert await value_of("number(true)") == 1
    assert await value_of("string(3)") == "3"
    assert await value_of('string([1, "a"])') == '[1, "a"]'
    assert await value_of('bool("true")') is True


@pytest.mark.asyncio
async def test_conversion_failures():
    assert_error(await run_duck('quack [number("abc")]'), "ConversionError", "'abc'")
    assert_error(await run_duck('quack [bool("yes")]'), "ConversionError")


@pytest.mark.asyncio
async def test_type_of():
    src = """
    quack [define f as quack [return 1]]
    quack [struct P with [a]]
    quack [print type-of(1) type-of("s") type-of(true) type-of(nil) type-of([1])]
    quack [print type-of(f) type-of(x -> x) type-of(print) type-of(P(1)) type-of(P)]
    """
    res = await run_duck(src)
    assert stdout(res) == [
        "number string boolean nil list",
        "function lambda builtin P struct",
    ]


# --- Codecs ---

@pytest.mark.asyncio
async def test_json_round_trip_through_structs():
    src = """
    quack [let d be json-parse(args at 0)]
    quack [print d.name d.legs type-of(d)]
    quack [d.legs becomes 3]
    quack [json-stringify(d)]
    """
    res = await run_duck(src, args=['{"name": "duck", "legs": 2}'])
    assert res.status == 'success', res.error_message
    assert stdout(res) == ["duck 2 object"]
    assert res.value == '{"name": "duck", "legs": 3}'


@pytest.mark.asyncio
async def test_json_parse_error_is_a_conversion_error():
    assert_error(await run_duck('quack [json-parse("{bad")]'), "ConversionError", "invalid JSON")


@pytest.mark.asyncio
async def test_json_stringify_rejects_functions():
    assert_error(await run_duck("quack [json-stringify([print])]"), "ConversionError")


@pytest.mark.asyncio
async def test_yaml_parse_and_stringify():
    src = """
    quack [let d be yaml-parse(args at 0)]
    quack [print d.tags]
    quack [yaml-stringify(d)]
    """
    res = await run_duck(src, args=["name: duck\ntags: [a, b]\n"])
    assert res.status == 'success', res.error_message
    assert stdout(res) == ['["a", "b"]']
    assert res.value == "name: duck\ntags:\n- a\n- b\n"


@pytest.mark.asyncio
async def test_base64():
    assert await value_of('base64-encode("duck")') == "ZHVjaw=="
    assert await value_of('base64-decode("ZHVjaw==")') == "duck"
    assert_error(await run_duck('quack [base64-decode("!!")]'), "ConversionError")


# --- Files ---

@pytest.mark.asyncio
async def test_file_functions_resolve_against_source_dir(tmp_path):
    src = """
    quack [write-file("notes/out.txt", "hello")]
    quack [append-file("notes/out.txt", " world")]
    quack [print read-file("notes/out.txt")]
    quack [print file-exists("notes/out.txt") file-exists("nope.txt")]
    """
    res = await run_duck(src, source_dir=str(tmp_path))
    assert res.status == 'success', res.error_message
    assert stdout(res) == ["hello world", "true false"]
    assert (tmp_path / "notes" / "out.txt").read_text() == "hello world"


@pytest.mark.asyncio
async def test_missing_file_is_a_file_error(tmp_path):
    res = await run_duck('quack [read-file("missing.txt")]', source_dir=str(tmp_path))
    assert_error(res, "FileError", "missing.txt")


# --- Process ---

@pytest.mark.asyncio
async def test_env(monkeypatch):
    monkeypatch.setenv("DUCK_TEST_POND", "quiet")
    monkeypatch.delenv("DUCK_TEST_MISSING", raising=False)
    assert await value_of('env("DUCK_TEST_POND")') == "quiet"
    assert await value_of('env("DUCK_TEST_MISSING")') is None


@pytest.mark.asyncio
async def test_sleep_and_now():
    assert await value_of("sleep(0)") is None
    assert await value_of("now()") > 0
    assert_error(await run_duck("quack [sleep(-1)]"), "ValueError")


# --- Calling conventions ---

@pytest.mark.asyncio
async def test_builtin_arity_mismatch():
    assert_error(await run_duck("quack [len([1], [2])]"), "ArityMismatch", "'len'")


@pytest.mark.asyncio
async def test_builtin_type_error_is_rescuable():
    src = """
    quack [attempt quack [len(5)] rescue [e] quack [print e]]
    """
    res = await run_duck(src)
    assert res.status == 'success'
    assert stdout(res) == ["len expects a list or a string, got number"]


@pytest.mark.asyncio
async def test_builtins_can_be_passed_around():
    res = await run_duck("quack [let shout be upper] quack [shout(\"hi\")]")
    assert res.value == "HI"


@pytest.mark.asyncio
async def test_builtins_returning_structs():
    res = await run_duck('quack [json-parse("{}")]')
    assert isinstance(res.value, StructInstance)
    assert res.value.type_name == "object"


@pytest.mark.parametrize("fn", ["floor", "ceil", "round"])
@pytest.mark.asyncio
async def test_rounding_infinity_is_a_rescuable_value_error(fn):
    assert_error(await run_duck(f"quack [{fn}(INFINITY)]"), "ValueError")
    res = await run_duck(f'quack [attempt quack [print {fn}(INFINITY)] rescue [e] quack [print "rescued"]]')
    assert res.status == 'success', res.error_message
    assert stdout(res) == ["rescued"]


@pytest.mark.asyncio
async def test_self_containing_list_prints_with_a_marker():
    src = """
    quack [let a be [1]]
    quack [push a a]
    quack [print a]
    quack [print f"{a}" string(a) == "[1, [...]]"]
    """
    res = await run_duck(src)
    assert res.status == 'success', res.error_message
    assert stdout(res) == ["[1, [...]]", "[1, [...]] true"]


@pytest.mark.asyncio
async def test_self_referencing_struct_prints_with_a_marker():
    src = """
    quack [struct Node with [next]]
    quack [let n be Node(nil)]
    quack [n.next becomes n]
    quack [print n]
    """
    res = await run_duck(src)
    assert stdout(res) == ["Node { next: Node {...} }"]


@pytest.mark.asyncio
async def test_json_stringify_of_a_cycle_is_a_rescuable_conversion_error():
    src = "quack [let a be [1]] quack [push a a] quack [json-stringify(a)]"
    assert_error(await run_duck(src), "ConversionError", "circular")
    res = await run_duck(
        'quack [let a be [1]] quack [push a a] '
        'quack [attempt quack [json-stringify(a)] rescue [e] quack [print "rescued"]]')
    assert stdout(res) == ["rescued"]


@pytest.mark.asyncio
async def test_json_stringify_rejects_infinity():
    assert_error(await run_duck("quack [json-stringify(INFINITY)]"), "ConversionError")


@pytest.mark.asyncio
async def test_shared_but_acyclic_lists_still_serialize():
    src = "quack [let x be [1]] quack [json-stringify([x, x])]"
    res = await run_duck(src)
    assert res.value == "[[1], [1]]"
