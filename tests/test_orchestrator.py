"""
Tests for the run state machine.

Docker, psql and the load-test runner are faked; the stats logger runs for
real against a stand-in command so its start/stop wiring is covered too.
"""

import json
import signal
import threading

import pytest

from conftest import FakeComposeClient, FakeStore, RecordingRunner, fake_warmup, read_text, running
from ledgerbench.automation import orchestrator as orchestrator_module
from ledgerbench.automation.errors import EXIT_FATAL, EXIT_INTERRUPTED, EXIT_OK, RunInterrupted
from ledgerbench.automation.orchestrator import Orchestrator, RunState, build_plan


@pytest.fixture
def make_orchestrator(tmp_path, stack_config, run_log, ready_client):
    def _make(client=None, store=None, runner=None, warmup=fake_warmup, stats=True):
        return Orchestrator(
            stack_config,
            run_log,
            stats_log_path=tmp_path / "stats.txt" if stats else None,
            stop_flag=tmp_path / "stop.flg" if stats else None,
            client=client or ready_client,
            store=store or FakeStore(),
            runner=runner or RecordingRunner(),
            warmup=warmup,
            result_path=tmp_path / "result.json",
        )

    return _make


def _states(orch):
    return [record.state for record in orch.recorder.states]


class TestHappyPath:

    def test_all_steps_in_order(self, make_orchestrator, tmp_path):
        runner = RecordingRunner()
        store = FakeStore()
        orch = make_orchestrator(runner=runner, store=store)

        code = orch.run()

        assert code == EXIT_OK
        assert orch.state is RunState.DONE
        assert _states(orch) == ["TEARDOWN", "STARTUP", "AWAIT_READY", "WARMUP", "RESET", "LOAD_TEST", "DONE"]
        assert runner.titles[:3] == ["docker compose down -v", "docker rm -f", "docker compose up"]
        assert len(runner.load_test_calls) == 1
        assert store.executed == [orch.config.store.statements]

    def test_load_test_argv_carries_scenario(self, make_orchestrator, stack_config):
        runner = RecordingRunner()
        make_orchestrator(runner=runner).run()

        _title, argv, cwd = runner.load_test_calls[0]
        assert "-Dgatling.simulationClass=" + stack_config.load_test.scenario in argv
        assert cwd == stack_config.load_test.cwd

    def test_step_banners_are_logged(self, make_orchestrator, run_log):
        make_orchestrator().run()

        text = read_text(run_log.path)
        for number in range(1, 8):
            assert f"[STEP {number}/7]" in text
        assert "Load test completed successfully." in text

    def test_result_json_is_written(self, make_orchestrator, tmp_path):
        make_orchestrator().run()

        payload = json.loads((tmp_path / "result.json").read_text(encoding="utf-8"))
        assert payload["exit_code"] == 0
        assert payload["error"] is None
        assert payload["states"][-1]["state"] == "DONE"
        assert payload["warmup"]["failed"] == 0

    def test_stats_logger_is_started_and_stopped(self, make_orchestrator, tmp_path):
        orch = make_orchestrator()
        orch.run()

        stats = read_text(tmp_path / "stats.txt")
        assert "Logger started." in stats
        assert "Stop signal detected. Stopping logger." in stats
        assert not orch.stats_logger.running
        assert not (tmp_path / "stop.flg").exists()


class TestFailureTolerance:

    def test_teardown_and_startup_failures_do_not_abort(self, make_orchestrator, run_log):
        runner = RecordingRunner(codes={"docker compose down -v": 1, "docker rm -f": 1, "docker compose up": 17})
        orch = make_orchestrator(runner=runner)

        code = orch.run()

        assert code == EXIT_OK
        text = read_text(run_log.path)
        assert "[WARN] 'docker rm -f' exited with 1; continuing." in text
        assert "[WARN] 'docker compose up' exited with 17; continuing." in text

    def test_load_test_exit_code_is_propagated(self, make_orchestrator, run_log):
        runner = RecordingRunner(load_test_code=3)

        code = make_orchestrator(runner=runner).run()

        assert code == 3
        assert "Load test failed. Exit=3" in read_text(run_log.path)


class TestAbort:

    def test_readiness_timeout_aborts_before_load_test(self, make_orchestrator, run_log):
        runner = RecordingRunner()
        store = FakeStore()
        client = FakeComposeClient({"postgres": [], "app1": [running("app100000001")]})
        orch = make_orchestrator(client=client, runner=runner, store=store)

        code = orch.run()

        assert code == EXIT_FATAL
        assert orch.state is RunState.ABORTED
        assert runner.load_test_calls == []
        assert store.executed == []
        assert "postgres: instances=0 NOT READY" in read_text(run_log.path)

    def test_reset_failure_aborts_before_load_test(self, make_orchestrator, tmp_path):
        runner = RecordingRunner()
        orch = make_orchestrator(runner=runner, store=FakeStore(fail_at=2))

        code = orch.run()

        assert code == EXIT_FATAL
        assert runner.load_test_calls == []
        assert _states(orch)[-2:] == ["RESET", "ABORTED"]
        payload = json.loads((tmp_path / "result.json").read_text(encoding="utf-8"))
        assert payload["error"]["type"] == "ResetError"
        assert "statement 2" in payload["error"]["message"]

    def test_store_never_answering_aborts(self, make_orchestrator):
        runner = RecordingRunner()

        code = make_orchestrator(runner=runner, store=FakeStore(ping_results=[False])).run()

        assert code == EXIT_FATAL
        assert runner.load_test_calls == []


class TestInterrupt:

    def test_interrupt_during_warmup(self, make_orchestrator, tmp_path, ready_client):
        def _interrupted_warmup(settings, log=None, cancel=None):
            raise RunInterrupted("operator")

        runner = RecordingRunner()
        orch = make_orchestrator(runner=runner, warmup=_interrupted_warmup)

        code = orch.run()

        assert code == EXIT_INTERRUPTED
        assert orch.state is RunState.INTERRUPTED
        assert orch.cancel.is_set()
        assert ready_client.stopped == 1
        assert runner.load_test_calls == []
        assert "Logger interrupted by signal. Exiting." in read_text(tmp_path / "stats.txt")
        payload = json.loads((tmp_path / "result.json").read_text(encoding="utf-8"))
        assert payload["exit_code"] == EXIT_INTERRUPTED

    def test_keyboard_interrupt_in_load_test(self, make_orchestrator):
        class _CtrlC(RecordingRunner):
            def __call__(self, title, argv, cwd):
                if title.startswith("load test"):
                    raise KeyboardInterrupt
                return super().__call__(title, argv, cwd)

        assert make_orchestrator(runner=_CtrlC()).run() == EXIT_INTERRUPTED

    def test_interrupt_during_cleanup_still_exits_130(self, make_orchestrator, tmp_path, ready_client):
        orch = make_orchestrator()
        stop_logger = orch._stop_stats_logger

        def _stop_then_signal(interrupted):
            stop_logger(interrupted)
            raise RunInterrupted("received signal 2")

        orch._stop_stats_logger = _stop_then_signal

        code = orch.run()

        assert code == EXIT_INTERRUPTED
        assert orch.state is RunState.INTERRUPTED
        assert ready_client.stopped == 1
        payload = json.loads((tmp_path / "result.json").read_text(encoding="utf-8"))
        assert payload["exit_code"] == EXIT_INTERRUPTED
        assert payload["states"][-1]["state"] == "INTERRUPTED"

    def test_signal_after_last_step_is_not_lost(self, make_orchestrator, tmp_path):
        orch = make_orchestrator()

        class _SignalAtEnd(RecordingRunner):
            def __call__(self, title, argv, cwd):
                code = super().__call__(title, argv, cwd)
                if title.startswith("load test"):
                    # what the handler does once the steps are over: flag, no raise
                    orch.cancel.set()
                return code

        orch.runner = _SignalAtEnd()

        assert orch.run() == EXIT_INTERRUPTED
        assert (tmp_path / "result.json").exists()


class TestSignalHandlers:

    @pytest.fixture
    def handlers(self, monkeypatch):
        installed = {}
        monkeypatch.setattr(
            orchestrator_module.signal, "signal", lambda signum, handler: installed.__setitem__(signum, handler)
        )
        return installed

    def test_raises_only_while_steps_run(self, handlers):
        cancel = threading.Event()
        active = {"value": False}
        orchestrator_module.install_signal_handlers(cancel, raise_when=lambda: active["value"])

        handlers[signal.SIGINT](signal.SIGINT, None)

        assert cancel.is_set()

    def test_first_signal_raises_and_later_ones_are_ignored(self, handlers):
        cancel = threading.Event()
        orchestrator_module.install_signal_handlers(cancel, raise_when=lambda: True)

        with pytest.raises(RunInterrupted):
            handlers[signal.SIGTERM](signal.SIGTERM, None)
        handlers[signal.SIGINT](signal.SIGINT, None)

        assert cancel.is_set()

    def test_main_maps_escaped_interrupt_to_130(self, tmp_path, monkeypatch):
        monkeypatch.setattr(orchestrator_module, "install_signal_handlers", lambda *args, **kwargs: None)

        def _interrupted_run(self):
            raise RunInterrupted("received signal 15")

        monkeypatch.setattr(Orchestrator, "run", _interrupted_run)

        code = orchestrator_module.main([str(tmp_path / "run.txt")])

        assert code == EXIT_INTERRUPTED


class TestPlan:

    def test_plan_lists_every_step(self, stack_config, ready_client):
        plan = build_plan(stack_config, ready_client)

        assert set(plan) == {"teardown", "startup", "readiness", "warmup", "reset", "load_test", "stats"}
        assert plan["readiness"]["services"] == ["postgres", "app1"]
        assert plan["warmup"]["read"].endswith("/clientes/{id}/extrato")

    def test_dry_run_prints_plan(self, capsys):
        code = orchestrator_module.main(["--dry-run"])

        out = capsys.readouterr().out
        assert code == EXIT_OK
        assert "gatling:test" in json.loads(out)["load_test"]["argv"]

    def test_missing_config_is_fatal(self, tmp_path, capsys):
        code = orchestrator_module.main(["--dry-run", "--config", str(tmp_path / "nope.yaml")])

        assert code == EXIT_FATAL
        assert "stack config not found" in capsys.readouterr().err
