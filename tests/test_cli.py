"""Tests for argument parsing, logging setup, and the async entry point."""

import json
import logging

import pytest

from tera_proxy import cli
from tera_proxy.util import TRACE


@pytest.fixture
def restore_logger():
    logger = logging.getLogger("tera-proxy")
    propagate, handlers, level = logger.propagate, list(logger.handlers), logger.level
    yield logger
    logger.propagate = propagate
    logger.handlers[:] = handlers
    logger.setLevel(level)


class TestParseArgs:
    def test_defaults(self):
        args = cli.parse_args([])
        assert (args.verbosity, args.config, args.color, args.raw) == (0, None, None, False)

    def test_bare_v(self):
        assert cli.parse_args(["-v"]).verbosity == 1

    def test_v_swallowing_config_path(self):
        args = cli.parse_args(["-v", "config.json"])
        assert (args.verbosity, args.config) == (1, "config.json")

    def test_v_with_level_and_config(self):
        args = cli.parse_args(["-v", "2", "config.yaml"])
        assert (args.verbosity, args.config) == (2, "config.yaml")

    @pytest.mark.parametrize("flag,level", [("-vv", 2), ("-vvv", 3), ("-q", -1), ("-qq", -2)])
    def test_shorthands(self, flag, level):
        assert cli.parse_args([flag]).verbosity == level

    def test_negative_level(self):
        assert cli.parse_args(["-v", "-1"]).verbosity == -1

    @pytest.mark.parametrize("value", ["9", "-3"])
    def test_invalid_level(self, value):
        with pytest.raises(SystemExit) as exc:
            cli.parse_args(["-v", value])
        assert exc.value.code == 2

    def test_color_flags(self):
        assert cli.parse_args(["-c"]).color is True
        assert cli.parse_args(["--no-color"]).color is False


class TestLogging:
    def test_console_level_follows_verbosity(self, restore_logger):
        logger = cli.setup_logging(2, color=False)

        (handler,) = logger.handlers
        assert handler.level == TRACE
        assert logger.propagate is False
        assert logging.getLevelName(TRACE) == "TRACE"

    def test_raw_json_lines(self, restore_logger):
        logger = cli.setup_logging(0, raw=True)
        record = logger.makeRecord("tera-proxy.x", logging.INFO, __file__, 1, "hello %s", ("there",), None)

        line = json.loads(logger.handlers[0].format(record))

        assert line["msg"] == "hello there"
        assert line["level"] == "info"
        assert line["name"] == "tera-proxy.x"

    def test_color_wraps_line(self, restore_logger):
        logger = cli.setup_logging(0, color=True)
        record = logger.makeRecord("tera-proxy", logging.ERROR, __file__, 1, "bad", (), None)

        assert logger.handlers[0].format(record).startswith("\x1b[31m")

    def test_file_logging(self, restore_logger, tmp_path):
        logger = cli.setup_logging(0, color=False)
        path = tmp_path / "proxy.log"
        cli.add_file_logging(str(path))
        logging.getLogger("tera-proxy.test").debug("to the file")

        for h in logger.handlers:
            h.flush()
            if isinstance(h, logging.FileHandler):
                h.close()

        lines = [json.loads(l) for l in path.read_text(encoding="utf-8").splitlines()]
        assert any(l["msg"] == "to the file" for l in lines)


class TestAmain:
    @pytest.mark.asyncio
    async def test_bad_config_exits_1(self, tmp_path):
        path = tmp_path / "c.json"
        path.write_text("{}")
        assert await cli.amain(cli.parse_args([str(path)])) == 1

    @pytest.mark.asyncio
    async def test_missing_module_dir_exits_1(self, tmp_path):
        path = tmp_path / "c.yaml"
        path.write_text(f"servers: '*'\nlogFile: null\nmodulesPath: {tmp_path / 'nope'}\n")
        assert await cli.amain(cli.parse_args([str(path)])) == 1

    @pytest.mark.asyncio
    async def test_malformed_server_settings_exit_1(self, tmp_path):
        mods = tmp_path / "mods"
        mods.mkdir()
        path = tmp_path / "c.yaml"
        path.write_text(
            f"servers:\n  - region: NA\n    servers: {{'1': true}}\nlogFile: null\nmodulesPath: {mods}\n"
        )
        assert await cli.amain(cli.parse_args([str(path)])) == 1

    def test_main_raises_system_exit(self, tmp_path, restore_logger):
        path = tmp_path / "c.json"
        path.write_text("not json at all")
        with pytest.raises(SystemExit) as exc:
            cli.main([str(path)])
        assert exc.value.code == 1
