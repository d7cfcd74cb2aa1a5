"""Tests for module preload and per-connection hook chaining."""

import asyncio
import os
import types

import pytest

from tera_proxy.dispatch import Connection, DispatchEngine, list_modules, load_module, preload_modules
from tera_proxy.errors import ModuleDirError, ModulePreloadError

REPO_MODS = os.path.join(os.path.dirname(__file__), "..", "mods")


@pytest.fixture
def mod_dir(tmp_path):
    (tmp_path / "alpha.py").write_text("def setup(connection):\n    return None\n")
    (tmp_path / "_private.py").write_text("raise SystemExit\n")
    (tmp_path / ".hidden.py").write_text("")
    (tmp_path / "notes.txt").write_text("not a module")
    pkg = tmp_path / "beta"
    pkg.mkdir()
    (pkg / "__init__.py").write_text("NAME = 'beta'\n")
    (tmp_path / "empty_dir").mkdir()
    return tmp_path


class TestPreload:
    def test_list_modules_filters(self, mod_dir):
        assert list_modules(str(mod_dir)) == ["alpha", "beta"]

    def test_missing_directory(self, tmp_path):
        with pytest.raises(ModuleDirError):
            list_modules(str(tmp_path / "nope"))

    def test_load_package(self, mod_dir):
        assert load_module(str(mod_dir), "beta").NAME == "beta"

    def test_broken_module_raises_preload_error(self, mod_dir):
        (mod_dir / "broken.py").write_text("import does_not_exist_anywhere\n")
        with pytest.raises(ModulePreloadError) as exc:
            load_module(str(mod_dir), "broken")
        assert exc.value.name == "broken"

    def test_preload_skips_broken_modules(self, mod_dir):
        (mod_dir / "broken.py").write_text("1 / 0\n")
        modules = preload_modules(str(mod_dir))
        assert sorted(modules) == ["alpha", "beta"]

    def test_bundled_traffic_log_module(self):
        engine = DispatchEngine.from_directory(REPO_MODS)
        assert "traffic_log" in engine.modules
        assert callable(engine.modules["traffic_log"].setup)


class _Writer:
    def get_extra_info(self, name, default=None):
        return ("127.0.0.1", 5555)


def _connection():
    return Connection(None, _Writer(), "10.0.0.1", 7801)


class TestConnectionHooks:
    def test_handlers_chain_in_load_order(self):
        conn = _connection()
        conn.load("a", types.SimpleNamespace(setup=lambda c: types.SimpleNamespace(on_client_data=lambda d: d + b"a")))
        conn.load("b", types.SimpleNamespace(setup=lambda c: types.SimpleNamespace(on_client_data=lambda d: d + b"b")))

        assert conn._apply("on_client_data", b">") == b">ab"
        assert conn._apply("on_server_data", b">") == b">"

    def test_none_passes_data_through(self):
        seen = []
        conn = _connection()
        conn.load("spy", types.SimpleNamespace(setup=lambda c: types.SimpleNamespace(on_server_data=seen.append)))

        assert conn._apply("on_server_data", b"data") == b"data"
        assert seen == [b"data"]

    def test_raising_hook_is_skipped(self):
        def boom(data):
            raise ValueError("bad packet")

        conn = _connection()
        conn.load("bad", types.SimpleNamespace(setup=lambda c: types.SimpleNamespace(on_client_data=boom)))
        conn.load("ok", types.SimpleNamespace(setup=lambda c: types.SimpleNamespace(on_client_data=bytes.upper)))

        assert conn._apply("on_client_data", b"x") == b"X"

    def test_setup_failures_and_missing_setup(self):
        def setup(c):
            raise RuntimeError("nope")

        conn = _connection()
        conn.load("fails", types.SimpleNamespace(setup=setup))
        conn.load("nosetup", types.SimpleNamespace())
        conn.load("declines", types.SimpleNamespace(setup=lambda c: None))

        assert conn.handlers == []

    def test_on_close_called_for_every_handler(self):
        closed = []

        def raising():
            raise RuntimeError("x")

        conn = _connection()
        conn.load("a", types.SimpleNamespace(setup=lambda c: types.SimpleNamespace(on_close=raising)))
        conn.load("b", types.SimpleNamespace(setup=lambda c: types.SimpleNamespace(on_close=lambda: closed.append("b"))))
        conn._closed()

        assert closed == ["b"]

    def test_describe(self):
        assert _connection().describe() == "from=127.0.0.1:5555 to=10.0.0.1:7801"


class TestBridge:
    @pytest.mark.asyncio
    async def test_upstream_failure_runs_on_close(self):
        from conftest import free_port

        closed = asyncio.Event()
        mod = types.SimpleNamespace(setup=lambda c: types.SimpleNamespace(on_close=closed.set))
        engine = DispatchEngine({"m": mod})
        port = free_port()

        async def handle(reader, writer):
            await engine.bridge(reader, writer, "127.0.0.1", port)

        server = await asyncio.start_server(handle, "127.0.0.1", 0)
        try:
            reader, writer = await asyncio.open_connection("127.0.0.1", server.sockets[0].getsockname()[1])
            assert await asyncio.wait_for(reader.read(), timeout=2) == b""
            await asyncio.wait_for(closed.wait(), timeout=2)
            writer.close()
        finally:
            server.close()
