"""Tests for BackupRun against real child processes."""

import queue

import pytest

from restic_backup.errors import PermissionDeniedError
from restic_backup.messages import DONE, ERROR, EXIT_ERROR, INFO, STATUS, SUMMARY
from restic_backup.runner import (
    CANCELLED,
    EXIT_STATUS,
    LAUNCH_FAILURE,
    BackupRun,
    RunState,
    create_transcript_pool,
)
from restic_backup.command import ResticCommand

TIMEOUT = 15

SUMMARY_SCRIPT = (
    "import json\n"
    "print(json.dumps({'message_type': 'summary', 'total_duration': 1.5}))\n"
)


def collect(run):
    return list(run.events(timeout=TIMEOUT))


def terminal_events(events):
    return [event for event in events if event.is_terminal]


def test_summary_line_is_the_only_terminal_event(python_command):
    run = BackupRun(python_command(SUMMARY_SCRIPT)).start()
    events = collect(run)

    assert [e.message_type for e in events] == [SUMMARY]
    assert events[0].total_duration == 1.5
    assert run.wait(timeout=TIMEOUT) is events[0]
    assert run.state is RunState.TERMINATED
    assert run.returncode == 0
    # Closed: further consumption ends immediately.
    assert collect(run) == []


def test_text_line_with_severity_keyword_becomes_error(python_command):
    run = BackupRun(python_command("print('FATAL: repository locked')")).start()
    events = collect(run)

    errors = [e for e in events if e.message_type == ERROR]
    assert len(errors) == 1
    assert errors[0].message == 'FATAL: repository locked'
    assert events[-1].message_type == DONE
    assert len(terminal_events(events)) == 1


def test_clean_exit_without_terminal_synthesizes_done(python_command):
    run = BackupRun(python_command("print('using parent snapshot 1234')")).start()
    events = collect(run)

    assert [e.message_type for e in events] == [INFO, DONE]
    assert events[-1].message == 'Command completed'
    assert run.terminal_event is events[-1]


def test_nonzero_exit_synthesizes_error(python_command):
    run = BackupRun(python_command("import sys; sys.exit(3)")).start()
    events = collect(run)

    assert len(events) == 1
    terminal = events[0]
    assert terminal.message_type == ERROR
    assert terminal.code == 1
    assert terminal.failure == EXIT_STATUS
    assert terminal.message == 'Command failed: exit status 3'
    assert run.returncode == 3


def test_terminal_event_from_stream_is_not_duplicated(python_command):
    script = (
        "import json, sys\n"
        "print(json.dumps({'message_type': 'exit_error', 'code': 1, 'message': 'Fatal: wrong password'}))\n"
        "sys.exit(1)\n"
    )
    run = BackupRun(python_command(script)).start()
    events = collect(run)

    assert [e.message_type for e in events] == [EXIT_ERROR]
    assert events[0].failure is None
    assert run.terminal_event is events[0]


def test_only_the_first_terminal_record_ends_the_run(python_command):
    script = (
        "import json\n"
        "print(json.dumps({'message_type': 'error', 'code': 2, 'message': 'Fatal: lock failed'}))\n"
        "print(json.dumps({'message_type': 'summary', 'snapshot_id': 'a1b2c3d4'}))\n"
    )
    run = BackupRun(python_command(script)).start()
    events = collect(run)

    assert [e.message_type for e in events] == [ERROR, INFO]
    assert len(terminal_events(events)) == 1
    assert run.terminal_event is events[0]
    assert 'a1b2c3d4' in events[1].message


def test_stderr_is_merged_into_events(python_command):
    script = "import sys; sys.stderr.write('error: cannot read file\\n')"
    events = collect(BackupRun(python_command(script)).start())

    assert events[0].message_type == ERROR
    assert events[0].message == 'error: cannot read file'


def test_small_queue_applies_backpressure_without_dropping(python_command):
    script = (
        "import json\n"
        "for i in range(300):\n"
        "    print(json.dumps({'message_type': 'status', 'files_done': i}))\n"
    )
    run = BackupRun(python_command(script), queue_size=2).start()
    events = collect(run)

    statuses = [e for e in events if e.message_type == STATUS]
    assert [e.files_done for e in statuses] == list(range(300))
    assert events[-1].message_type == DONE


def test_launch_failure_becomes_terminal_error(tmp_path):
    command = ResticCommand(argv=[str(tmp_path / 'missing' / 'restic')], env={})
    run = BackupRun(command).start()
    events = collect(run)

    assert len(events) == 1
    assert events[0].message_type == ERROR
    assert events[0].failure == LAUNCH_FAILURE
    assert run.state is RunState.TERMINATED


def test_cancel_terminates_child(python_command):
    script = (
        "import json, time\n"
        "print(json.dumps({'message_type': 'status', 'percent_done': 0.1}), flush=True)\n"
        "time.sleep(60)\n"
    )
    run = BackupRun(python_command(script)).start()
    events = run.events(timeout=TIMEOUT)

    first = next(events)
    assert first.message_type == STATUS
    run.cancel()
    rest = list(events)

    assert len(rest) == 1
    assert rest[0].message_type == ERROR
    assert rest[0].failure == CANCELLED
    assert run.wait(timeout=TIMEOUT) is rest[0]
    assert run.returncode != 0


def test_cancel_before_start(python_command):
    run = BackupRun(python_command(SUMMARY_SCRIPT))
    run.cancel()
    run.start()

    events = collect(run)
    assert len(events) == 1
    assert events[0].failure == CANCELLED


def test_cancel_unblocks_reader_when_nobody_consumes(python_command):
    script = (
        "for i in range(200):\n"
        "    print('line', i, flush=True)\n"
        "import time; time.sleep(60)\n"
    )
    run = BackupRun(python_command(script), queue_size=2).start()
    run.cancel()

    terminal = run.wait(timeout=TIMEOUT)
    assert run.state is RunState.TERMINATED
    assert terminal is not None
    assert terminal.is_error


def test_context_manager_cancels_unfinished_run(python_command):
    with BackupRun(python_command("import time; time.sleep(60)")) as run:
        pass

    assert run.state is RunState.TERMINATED
    assert run.terminal_event.failure == CANCELLED


def test_start_twice_is_an_error(python_command):
    run = BackupRun(python_command(SUMMARY_SCRIPT)).start()
    with pytest.raises(RuntimeError):
        run.start()
    run.wait(timeout=TIMEOUT)


def test_queue_size_must_hold_terminal_and_close_marker(python_command):
    with pytest.raises(ValueError):
        BackupRun(python_command(SUMMARY_SCRIPT), queue_size=1)


def test_events_timeout(python_command):
    with BackupRun(python_command("import time; time.sleep(60)")) as run:
        with pytest.raises(queue.Empty):
            next(run.events(timeout=0.2))


def test_failure_classified_from_output_tail(python_command):
    script = (
        "import sys\n"
        "print('error: open C:/Saves/level.dat: Access is denied.')\n"
        "sys.exit(1)\n"
    )
    pool = create_transcript_pool(lines=50)
    try:
        run = BackupRun(python_command(script), transcript_pool=pool).start()
        run.wait(timeout=TIMEOUT)

        assert 'Access is denied' in run.output_tail
        assert isinstance(run.classify_failure(), PermissionDeniedError)
        assert pool.size() == 1
    finally:
        pool.close()


def test_successful_run_has_nothing_to_classify(python_command):
    run = BackupRun(python_command(SUMMARY_SCRIPT)).start()
    run.wait(timeout=TIMEOUT)
    assert run.classify_failure() is None
