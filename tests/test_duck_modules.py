import pytest

from duck.duck_runtime import ScriptRunner


def write(path, text):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


async def run_duck(src: str, tmp_path, **kwargs):
    runner = ScriptRunner(source_dir=str(tmp_path), **kwargs)
    return await runner.handle_script(src)


def stdout(res):
    return [e['message'] for e in res.side_effects if e['topics'] == ['stdout']]


GREETER = """
quack [define greet taking [n] as quack [return f"hi {n}"]]
quack [let VERSION be 2]
quack [print "greeter loaded"]
"""


@pytest.mark.asyncio
async def test_flat_migrate_binds_exports(tmp_path):
    write(tmp_path / "greeter.duck", GREETER)
    res = await run_duck('quack [migrate "greeter.duck"] quack [print greet("bob") VERSION]', tmp_path)
    assert res.status == 'success', res.error_message
    assert stdout(res) == ["greeter loaded", "hi bob 2"]


@pytest.mark.asyncio
async def test_aliased_migrate_binds_a_namespace(tmp_path):
    write(tmp_path / "greeter.duck", GREETER)
    src = """
    quack [migrate "greeter.duck" as g]
    quack [print g.greet("ann") type-of(g)]
    quack [print greet("ann")]
    """
    res = await run_duck(src, tmp_path)
    assert res.status == 'error'
    assert res.error_kind == "UndefinedVariable"
    assert stdout(res) == ["greeter loaded", "hi ann module"]


@pytest.mark.asyncio
async def test_module_runs_once_per_program(tmp_path):
    write(tmp_path / "greeter.duck", GREETER)
    src = """
    quack [migrate "greeter.duck"]
    quack [migrate "./greeter.duck" as again]
    quack [print again.VERSION]
    """
    res = await run_duck(src, tmp_path)
    assert res.status == 'success', res.error_message
    assert stdout(res) == ["greeter loaded", "2"]


@pytest.mark.asyncio
async def test_module_paths_are_relative_to_the_importing_file(tmp_path):
    write(tmp_path / "lib" / "inner.duck", 'quack [let where be "inner"]')
    write(tmp_path / "lib" / "outer.duck", 'quack [migrate "inner.duck"] quack [let both be where + "+outer"]')
    res = await run_duck('quack [migrate "lib/outer.duck"] quack [print both]', tmp_path)
    assert res.status == 'success', res.error_message
    assert stdout(res) == ["inner+outer"]


@pytest.mark.asyncio
async def test_module_does_not_see_importer_args(tmp_path):
    write(tmp_path / "m.duck", "quack [let n be len(args)]")
    res = await run_duck('quack [migrate "m.duck"] quack [print n args]', tmp_path, args=["x"])
    assert stdout(res) == ['0 ["x"]']


@pytest.mark.asyncio
async def test_circular_import_is_fatal(tmp_path):
    write(tmp_path / "a.duck", 'quack [migrate "b.duck"]')
    write(tmp_path / "b.duck", 'quack [migrate "a.duck"]')
    src = 'quack [attempt quack [migrate "a.duck"] rescue [e] quack [print "rescued"]]'
    res = await run_duck(src, tmp_path)
    assert res.status == 'error'
    assert res.error_kind == "CircularImportError"
    assert stdout(res) == []


@pytest.mark.asyncio
async def test_missing_module_is_rescuable(tmp_path):
    src = 'quack [attempt quack [migrate "nope.duck"] rescue [e] quack [print "no module"]]'
    res = await run_duck(src, tmp_path)
    assert res.status == 'success', res.error_message
    assert stdout(res) == ["no module"]


@pytest.mark.asyncio
async def test_module_syntax_error_reports_the_module_file(tmp_path):
    bad = write(tmp_path / "bad.duck", "quack [let x be 1]\nquack [let be]\n")
    src = 'quack [attempt quack [migrate "bad.duck"] rescue [e] quack [print "rescued"]]'
    res = await run_duck(src, tmp_path)
    assert res.status == 'error'
    assert res.error_kind == "ParseError"
    assert res.error_token['path'] == str(bad)
    assert res.error_token['line'] == 2
    assert res.format_error().startswith(f"Error in {bad} on line 2")
    assert "quack [let be]" in res.error_message


@pytest.mark.asyncio
async def test_module_runtime_error_propagates(tmp_path):
    write(tmp_path / "boom.duck", "quack [let x be 1 / 0]")
    res = await run_duck('quack [migrate "boom.duck"]', tmp_path)
    assert res.error_kind == "DivisionByZero"


@pytest.mark.asyncio
async def test_struct_definitions_are_shared_with_modules(tmp_path):
    write(tmp_path / "shapes.duck", "quack [struct Point with [x, y]]")
    res = await run_duck('quack [migrate "shapes.duck" as shapes] quack [print Point(1, 2)]', tmp_path)
    assert res.status == 'success', res.error_message
    assert stdout(res) == ["Point { x: 1, y: 2 }"]


@pytest.mark.asyncio
async def test_module_unquacked_blocks_are_skipped(tmp_path):
    write(tmp_path / "m.duck", 'quack [let a be 1]\n[let b be 2]')
    runner = ScriptRunner(source_dir=str(tmp_path))
    res = await runner.handle_script('quack [migrate "m.duck"] quack [print a]')
    assert stdout(res) == ["1"]
    assert runner.evaluator.stats.unquacked_blocks == 1


@pytest.mark.asyncio
async def test_installed_library_is_found_by_name(tmp_path, monkeypatch):
    home = tmp_path / "home"
    write(home / "libs" / "pond" / "main.duck", 'quack [let depth be 3]')
    monkeypatch.setenv("DUCK_HOME", str(home))
    res = await run_duck('quack [migrate "@pond" as pond] quack [print pond.depth]', tmp_path)
    assert res.status == 'success', res.error_message
    assert stdout(res) == ["3"]


@pytest.mark.asyncio
async def test_missing_library_is_a_file_error(tmp_path, monkeypatch):
    monkeypatch.setenv("DUCK_HOME", str(tmp_path / "empty"))
    res = await run_duck('quack [migrate "@ghost"]', tmp_path)
    assert res.error_kind == "FileError"
    assert "goose install" in res.error_message


@pytest.mark.asyncio
async def test_migrate_needs_a_string(tmp_path):
    res = await run_duck("quack [migrate 42]", tmp_path)
    assert res.error_kind == "TypeError"


@pytest.mark.asyncio
async def test_cycle_back_to_the_running_script_is_caught_before_it_reruns(tmp_path):
    main = write(tmp_path / "a.duck", 'quack [print "a start"]\nquack [migrate "b.duck"]')
    write(tmp_path / "b.duck", 'quack [migrate "a.duck"]')
    runner = ScriptRunner(path=str(main))
    res = await runner.handle_script(main.read_text())
    assert res.status == 'error'
    assert res.error_kind == "CircularImportError"
    assert stdout(res) == ["a start"]


def test_script_path_sets_the_source_dir(tmp_path):
    runner = ScriptRunner(path=str(tmp_path / "main.duck"))
    assert runner.source_dir == str(tmp_path)
    assert str(tmp_path / "main.duck") in runner.evaluator.loading
