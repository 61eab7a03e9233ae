import logging

from replay_service_lib.service_logging import RunIdFilter, RunLogBuffer, run_id_ctx


def _logger(buffer):
    log = logging.getLogger("service.test-run-buffer")
    log.handlers = [buffer]
    log.propagate = False
    log.setLevel(logging.INFO)
    return log


def test_lines_are_kept_per_run_and_cleaned():
    buffer = RunLogBuffer(max_lines=50, max_runs=5)
    buffer.addFilter(RunIdFilter())
    log = _logger(buffer)

    log.info("outside any run")
    token = run_id_ctx.set("run-a")
    try:
        log.info("\x1b[32mclicked\x1b[0m #save\u200b")
        log.warning("skipping action #%d", 2)
    finally:
        run_id_ctx.reset(token)

    assert buffer.lines("run-a") == ["INFO clicked #save", "WARNING skipping action #2"]
    assert buffer.lines("-") is None
    assert buffer.lines("unknown") is None


def test_oldest_run_is_evicted():
    buffer = RunLogBuffer(max_lines=50, max_runs=2)
    log = _logger(buffer)
    for run in ("r1", "r2", "r3"):
        token = run_id_ctx.set(run)
        try:
            log.info("line for %s", run)
        finally:
            run_id_ctx.reset(token)

    assert buffer.lines("r1") is None
    assert buffer.lines("r3") == ["INFO line for r3"]
