"""Closing config and logger releases sink resources."""

import pytest

from checkgate.core import log
from checkgate.core.config import Config, ExecutionConfig, RepoConfig
from checkgate.core.log import (
    ConsoleSink,
    FileSink,
    LogfireSink,
    Logger,
    OTLPSink,
    close_logger,
    setup_logger,
)


def _logger(path, console=False):
    return Logger(
        console=ConsoleSink(enabled=console),
        file=FileSink(enabled=True, path=str(path)),
        otlp=OTLPSink(enabled=False),
        logfire=LogfireSink(enabled=False),
    )


def test_context_manager_flushes_and_closes(tmp_path):
    logger = _logger(tmp_path / "ctx.log")
    logger.setup(log_root=tmp_path, run_name="ctx")
    assert not logger.file._file.closed

    with logger:
        logger.info("gate passed")

    assert logger.file._file.closed
    assert "gate passed" in (tmp_path / "ctx.log").read_text()


def test_closes_on_exception(tmp_path):
    logger = _logger(tmp_path / "err.log")
    logger.setup(log_root=tmp_path, run_name="err")

    with pytest.raises(ValueError), logger:
        raise ValueError("boom")

    assert logger.file._file.closed


def test_console_sink_close_is_harmless(tmp_path):
    logger = _logger(tmp_path / "multi.log", console=True)
    logger.setup(log_root=tmp_path, run_name="multi")
    logger.close()
    assert logger.file._file.closed


def test_config_close_cascades_to_sinks(tmp_path):
    config = Config(
        logger=_logger(tmp_path / "cascade.log"),
        repo=RepoConfig(workdir=tmp_path, base_ref="main"),
        execution=ExecutionConfig(output_dir=tmp_path / "runs", name="cascade"),
        log_root=tmp_path,
    )
    config.logger.setup(log_root=tmp_path, run_name="cascade")
    assert not config.logger.file._file.closed

    config.close()

    assert config.logger.file._file.closed


def test_close_logger_resets_proxy(tmp_path):
    current = setup_logger(
        log_root=tmp_path,
        run_name="proxy",
        console=ConsoleSink(enabled=False),
        otlp=OTLPSink(enabled=False),
        file=FileSink(enabled=True, path=str(tmp_path / "proxy.log")),
        logfire=LogfireSink(enabled=False),
    )
    close_logger()

    assert current.file._file.closed
    assert log._current_logger is None
    # Calls before the next setup are no-ops
    log.logger.info("dropped")
    with log.logger.span("dropped span"):
        pass
