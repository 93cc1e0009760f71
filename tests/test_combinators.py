from __future__ import annotations

import asyncio
import os
import tempfile
import unittest
from pathlib import Path

import pytest

from formparse.base import MISSING
from formparse.combinators import (
    alternatives,
    any_,
    array,
    default_value,
    file,
    nullable,
    obj,
    one_of,
    optional,
    transform,
)
from formparse.exceptions import BoundError, CoercionError, ParsingError, ShapeError
from formparse.files import RAMFile, TempFile
from formparse.parsers import boolean, buffer, integer, string


class TestObject(unittest.TestCase):
    def setUp(self) -> None:
        self.shape = {
            "name": string(),
            "age": integer(min=0),
            "admin": optional(boolean()),
        }
        self.p = obj(self.shape)

    def test_simple(self) -> None:
        result = self.p({"name": "ann", "age": "31", "admin": "yes"})
        self.assertEqual(result, {"name": "ann", "age": 31, "admin": True})

    def test_idempotent(self) -> None:
        value = {"name": "ann", "age": "31"}
        once = self.p(value)
        self.assertEqual(self.p(once), once)

    def test_keeps_shape_order(self) -> None:
        result = self.p({"admin": "no", "age": 1, "name": "x"})
        self.assertEqual(list(result), ["name", "age", "admin"])

    def test_errors_are_aggregated(self) -> None:
        with self.assertRaises(ParsingError) as ctx:
            self.p({"name": {}, "age": "-3"}, "body")

        message = str(ctx.exception)
        self.assertIn("[body.name] cannot be converted to a string", message)
        self.assertIn("[body.age] is less than the allowed minimum (0)", message)
        self.assertEqual(len(ctx.exception.errors), 2)

    def test_required(self) -> None:
        with self.assertRaises(ParsingError) as ctx:
            self.p({"name": "ann"})
        self.assertEqual(str(ctx.exception), "[.age] is required")
        self.assertIsInstance(ctx.exception.errors[0], ShapeError)

    def test_missing_values_are_not_stored(self) -> None:
        p = obj({"a": any_(), "b": optional(integer())})
        self.assertEqual(p({}), {"b": None})

    def test_unknown_keys(self) -> None:
        self.assertEqual(obj({"a": any_()})({"a": 1, "b": 2}), {"a": 1})

        p = obj({"a": any_()}, ignore_unknown=False)
        with self.assertRaises(ParsingError) as ctx:
            p({"a": 1, "b": 2, "c": 3})
        self.assertEqual(str(ctx.exception), "[.b] is not allowed\n[.c] is not allowed")

    def test_nested_paths(self) -> None:
        p = obj({"items": array(obj({"id": integer()}))})
        with self.assertRaises(ParsingError) as ctx:
            p({"items": [{"id": 1}, {"id": "x"}]})
        self.assertEqual(str(ctx.exception), "[.items[1].id] cannot be parsed as integer")

    def test_json_fallback(self) -> None:
        self.assertEqual(self.p('{"name": "ann", "age": 3}'), {"name": "ann", "age": 3})
        self.assertEqual(self.p(b'{"name": "ann", "age": 3}'), {"name": "ann", "age": 3})

    def test_json_fallback_validation_errors_propagate(self) -> None:
        with self.assertRaises(ParsingError) as ctx:
            self.p('{"name": "ann", "age": "old"}')
        self.assertEqual(str(ctx.exception), "[.age] cannot be parsed as integer")

    def test_not_an_object(self) -> None:
        for value in ("not json", "[1, 2]", 5, None, MISSING, b"\xff"):
            with self.assertRaises(ShapeError) as ctx:
                self.p(value, "body")
            self.assertEqual(str(ctx.exception), "[body] cannot be converted to an object")

    def test_deeply_nested_json(self) -> None:
        with self.assertRaises(ShapeError):
            self.p("[" * 100000 + "]" * 100000)

    def test_other_exceptions_propagate(self) -> None:
        def boom(value):
            raise RuntimeError("boom")

        p = obj({"a": transform(any_(), boom), "b": integer()})
        with self.assertRaises(RuntimeError):
            p({"a": 1, "b": "x"})

    def test_config(self) -> None:
        p = obj({}, max_file_memory=10, temp_dir="/tmp/uploads")
        self.assertEqual(p.config["MAX_MEMORY_FILE_SIZE"], 10)
        self.assertEqual(p.config["UPLOAD_DIR"], "/tmp/uploads")

        p = obj({}, config={"SNIFF_BUFFER_SIZE": 64})
        self.assertEqual(p.config["SNIFF_BUFFER_SIZE"], 64)

        with self.assertRaises(ValueError):
            obj({}, max_for_ram=-1)


class TestArray(unittest.TestCase):
    def test_simple(self) -> None:
        self.assertEqual(array(integer())(["1", 2, 3.0]), [1, 2, 3])
        self.assertEqual(array(integer())(("1",)), [1])
        self.assertEqual(array(integer())([]), [])

    def test_scalar_is_wrapped(self) -> None:
        self.assertEqual(array(integer())(5), [5])
        self.assertEqual(array(string())("abc"), ["abc"])

    def test_not_an_array(self) -> None:
        with self.assertRaises(ShapeError) as ctx:
            array(integer())("abc", ".a")
        self.assertEqual(str(ctx.exception), "[.a] should be an array")

    def test_length(self) -> None:
        with self.assertRaises(BoundError) as ctx:
            array(integer(), max=2)([1, 2, 3], ".a")
        self.assertEqual(str(ctx.exception), "[length(.a)] is larger than the allowed maximum (2)")

        with self.assertRaises(BoundError) as ctx:
            array(integer(), min=1)([], ".a")
        self.assertEqual(str(ctx.exception), "[length(.a)] is less than the allowed minimum (1)")

    def test_element_errors(self) -> None:
        with self.assertRaises(ParsingError) as ctx:
            array(integer())(["1", "x", "y"], ".a")
        self.assertEqual(
            str(ctx.exception), "[.a[1]] cannot be parsed as integer\n[.a[2]] cannot be parsed as integer"
        )

    def test_retry_as_single_element(self) -> None:
        # The elements are not buffers on their own, but the list as a whole is.
        self.assertEqual(array(buffer())([1, 2]), [b"\x01\x02"])


class TestAlternatives(unittest.TestCase):
    def setUp(self) -> None:
        self.p = alternatives(integer(), string())

    def test_first_success_wins(self) -> None:
        self.assertEqual(self.p(5), 5)
        self.assertEqual(self.p("5"), 5)
        self.assertEqual(self.p("abc"), "abc")

    def test_all_fail(self) -> None:
        with self.assertRaises(ParsingError) as ctx:
            self.p({}, ".v")
        self.assertEqual(
            str(ctx.exception),
            "[.v] doesn't match any of allowed alternatives:\n"
            "[.v] cannot be parsed as integer\n"
            "[.v] cannot be converted to a string",
        )
        self.assertEqual(len(ctx.exception.errors), 2)

    def test_nested_in_object(self) -> None:
        p = obj({"a": self.p, "b": integer()})
        with self.assertRaises(ParsingError) as ctx:
            p({"a": {}, "b": "x"})
        self.assertEqual(
            str(ctx.exception),
            "[.a] doesn't match any of allowed alternatives:\n"
            "[.a] cannot be parsed as integer\n"
            "[.a] cannot be converted to a string\n"
            "[.b] cannot be parsed as integer",
        )
        self.assertEqual(len(ctx.exception.errors), 2)

    def test_nested_in_array(self) -> None:
        with self.assertRaises(ParsingError) as ctx:
            array(self.p)([1, {}], ".v")
        self.assertTrue(str(ctx.exception).startswith("[.v[1]] doesn't match any of allowed alternatives:\n"))

    def test_other_exceptions_propagate(self) -> None:
        def boom(value):
            raise KeyError(value)

        p = alternatives(transform(any_(), boom), any_())
        with self.assertRaises(KeyError):
            p(1)


class TestSmallCombinators(unittest.TestCase):
    def test_one_of(self) -> None:
        p = one_of(["a", 1, None])
        self.assertEqual(p("a"), "a")
        self.assertEqual(p(1), 1)
        self.assertIsNone(p(None))

        for value in ("b", True, 1.0, MISSING):
            with self.assertRaises(ShapeError) as ctx:
                p(value, ".v")
            self.assertEqual(str(ctx.exception), "[.v] isn't equal to any of the expected values")

    def test_optional(self) -> None:
        p = optional(integer())
        self.assertIsNone(p(MISSING))
        self.assertIsNone(p(None))
        self.assertEqual(p("3"), 3)
        with self.assertRaises(CoercionError):
            p("x")

    def test_nullable(self) -> None:
        p = nullable(integer())
        self.assertIsNone(p(None))
        self.assertEqual(p(3), 3)
        with self.assertRaises(CoercionError):
            p(MISSING)

    def test_default_value(self) -> None:
        p = default_value(10, integer())
        self.assertEqual(p(MISSING), 10)
        self.assertEqual(p(None), 10)
        self.assertEqual(p("3"), 3)

        self.assertEqual(obj({"n": p})({}), {"n": 10})

    def test_transform(self) -> None:
        p = transform(string(), str.upper)
        self.assertEqual(p("abc"), "ABC")
        with self.assertRaises(CoercionError):
            p(None)

    def test_any(self) -> None:
        value = object()
        self.assertIs(any_()(value), value)
        self.assertIs(any_()(MISSING), MISSING)


class TestFile(unittest.TestCase):
    def test_file_passes_through(self) -> None:
        f = RAMFile("a.txt", "f")
        f.append(b"abc")
        self.assertIs(file()(f), f)

    def test_buffer_becomes_file(self) -> None:
        f = file()(b"abc")
        self.assertIsInstance(f, RAMFile)
        self.assertEqual(f.read(), b"abc")
        self.assertEqual(f.size, 3)

    def test_max(self) -> None:
        with self.assertRaises(BoundError) as ctx:
            file(max=2)("abc", ".f")
        self.assertEqual(str(ctx.exception), "[.f] is too large.")

        f = RAMFile()
        f.append(b"abc")
        with self.assertRaises(BoundError):
            file(max=2)(f)

    def test_not_a_file(self) -> None:
        with self.assertRaises(CoercionError) as ctx:
            file()(12, ".f")
        self.assertEqual(str(ctx.exception), "[.f] cannot be converted to a file")


def test_file_keeps_values_in_memory(tmp_path: Path) -> None:
    f = file(max_for_ram=4, temp_dir=str(tmp_path))(b"0123456789")
    assert isinstance(f, RAMFile)
    assert f.read() == b"0123456789"
    assert os.listdir(tmp_path) == []

    # A failing sibling key leaves nothing behind either.
    with pytest.raises(ParsingError):
        obj({"f": file(max_for_ram=4, temp_dir=str(tmp_path)), "n": integer()})({"f": b"0123456789", "n": "x"})
    assert os.listdir(tmp_path) == []


class TestFileStream(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.dir = tmp.name

    async def test_stream(self) -> None:
        async def body():
            yield b"abc"
            yield b"def"

        f = await file().stream(body(), headers={"Content-Type": "text/plain", "X-File-Name": "a.txt"})
        self.assertEqual(f.read(), b"abcdef")
        self.assertEqual(f.file_name, "a.txt")
        self.assertEqual(f.content_type, "text/plain")

    async def test_stream_spools(self) -> None:
        f = await file(max_for_ram=2, temp_dir=self.dir).stream([b"ab", b"cd"])
        try:
            self.assertIsInstance(f, TempFile)
            self.assertEqual(f.size, 4)
            self.assertEqual(f.read(), b"abcd")
        finally:
            f.cleanup()
        self.assertEqual(os.listdir(self.dir), [])

    async def test_stream_too_large_is_removed(self) -> None:
        with self.assertRaises(BoundError) as ctx:
            await file(max=3, max_for_ram=1, temp_dir=self.dir).stream([b"ab", b"cd"], ".f")
        self.assertEqual(str(ctx.exception), "[.f] is too large.")
        self.assertEqual(os.listdir(self.dir), [])

    async def test_stream_source_errors_propagate(self) -> None:
        async def body():
            yield b"abc"
            await asyncio.sleep(0)
            raise ConnectionError("gone")

        with self.assertRaises(ConnectionError):
            await file().stream(body())


@pytest.mark.parametrize("value", [["1", "2"], "1"])
def test_array_of_form_values(value) -> None:
    # A repeated form field arrives as a list, a single one as a scalar.
    assert array(integer())(value) == [int(v) for v in (value if isinstance(value, list) else [value])]
