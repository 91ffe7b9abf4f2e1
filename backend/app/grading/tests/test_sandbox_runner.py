"""
Tests for the Docker sandbox executor.

The Docker client is mocked: these tests check what the executor asks Docker
to do and how it classifies what comes back.
"""

import asyncio
import io
import socket
import tarfile
import time
from unittest.mock import MagicMock

import pytest
from docker.errors import APIError, DockerException, ImageNotFound

from backend.app.grading.frames import STDERR, STDOUT, encode_frame
from backend.app.grading.languages import LANGUAGE_PROFILES, LanguageProfile
from backend.app.grading.models import OutcomeStatus
from backend.app.grading.sandbox_runner import (
    MAX_CODE_BYTES, MAX_OUTPUT_CHARS, SANDBOX_LABEL, SandboxExecutor, _build_archive,
)

PYTHON = LANGUAGE_PROFILES["python"]


def make_client(chunks=(), exit_code=0):
    client = MagicMock()
    container = MagicMock()
    container.name = "sandbox_test"
    sock = MagicMock()
    sock.recv.side_effect = list(chunks) + [b""]
    container.attach_socket.return_value._sock = sock
    container.wait.return_value = {"StatusCode": exit_code}
    client.containers.create.return_value = container
    return client, container, sock


def run(executor, profile=PYTHON, code="print(1)", stdin=""):
    return asyncio.run(executor.run(profile, code, stdin))


class TestSandboxSuccess:
    def test_ok_outcome_with_demuxed_output(self):
        client, container, sock = make_client([encode_frame(STDOUT, b"Hello, World!\n")])

        outcome = run(SandboxExecutor(client=client), code='print("Hello, World!")')

        assert outcome.status == OutcomeStatus.OK
        assert outcome.stdout == "Hello, World!\n"
        assert outcome.stderr == ""
        assert outcome.result.timed_out is False
        container.remove.assert_called_once_with(force=True)

    def test_container_is_isolated(self):
        client, _, _ = make_client()

        run(SandboxExecutor(client=client))

        image = client.containers.create.call_args.args[0]
        kwargs = client.containers.create.call_args.kwargs
        assert image == "python:3.9"
        assert kwargs["command"] == ["sh", "-c", "python main.py"]
        assert kwargs["network_disabled"] is True
        assert kwargs["mem_limit"] == "128m"
        assert kwargs["memswap_limit"] == "128m"
        assert kwargs["nano_cpus"] == 500_000_000
        assert kwargs["cap_drop"] == ["ALL"]
        assert kwargs["labels"] == {SANDBOX_LABEL: "python"}
        assert kwargs["working_dir"] == "/code"

    def test_stdin_written_once_then_closed(self):
        client, _, sock = make_client()

        run(SandboxExecutor(client=client), stdin="5 3\n")

        sock.sendall.assert_called_once_with(b"5 3\n")
        sock.shutdown.assert_called_once_with(socket.SHUT_WR)
        sock.close.assert_called_once()

    def test_empty_stdin_still_closes_channel(self):
        client, _, sock = make_client()

        run(SandboxExecutor(client=client), stdin="")

        sock.sendall.assert_not_called()
        sock.shutdown.assert_called_once_with(socket.SHUT_WR)

    def test_source_is_the_only_file_copied_in(self):
        client, container, _ = make_client()

        run(SandboxExecutor(client=client), profile=LANGUAGE_PROFILES["java"], code="class Main {}")

        path, archive = container.put_archive.call_args.args
        assert path == "/"
        with tarfile.open(fileobj=io.BytesIO(archive)) as tar:
            names = tar.getnames()
            content = tar.extractfile("code/Main.java").read()
        assert names == ["code", "code/Main.java"]
        assert content == b"class Main {}"

    def test_output_is_truncated(self):
        client, _, _ = make_client([encode_frame(STDOUT, b"x" * (MAX_OUTPUT_CHARS + 10))])

        outcome = run(SandboxExecutor(client=client))

        assert outcome.stdout.endswith("...[output truncated]...")
        assert len(outcome.stdout) < MAX_OUTPUT_CHARS + 40

    def test_pulls_missing_image(self):
        client, container, _ = make_client()
        client.containers.create.side_effect = [ImageNotFound("no image"), container]

        outcome = run(SandboxExecutor(client=client))

        assert outcome.status == OutcomeStatus.OK
        client.images.pull.assert_called_once_with("python:3.9")


class TestSandboxFailures:
    def test_runtime_error_on_stderr(self):
        client, _, _ = make_client(
            [encode_frame(STDERR, b"Traceback...\nNameError: x\n")], exit_code=1
        )

        outcome = run(SandboxExecutor(client=client))

        assert outcome.status == OutcomeStatus.RUNTIME_ERROR
        assert "NameError" in outcome.error_text

    def test_runtime_error_on_exit_code_only(self):
        client, _, _ = make_client([encode_frame(STDOUT, b"partial")], exit_code=137)

        outcome = run(SandboxExecutor(client=client))

        assert outcome.status == OutcomeStatus.RUNTIME_ERROR
        assert outcome.error_text == "Exited 137"
        assert outcome.stdout == "partial"

    def test_creation_failure(self):
        client = MagicMock()
        client.containers.create.side_effect = DockerException("Cannot connect to the Docker daemon")

        outcome = run(SandboxExecutor(client=client))

        assert outcome.status == OutcomeStatus.CREATION_ERROR
        assert "Docker daemon" in outcome.error_text

    def test_creation_failure_when_image_missing_and_pull_disabled(self):
        client = MagicMock()
        client.containers.create.side_effect = ImageNotFound("no image")

        outcome = run(SandboxExecutor(client=client, pull_missing_images=False))

        assert outcome.status == OutcomeStatus.CREATION_ERROR
        client.images.pull.assert_not_called()

    def test_start_failure_is_creation_error_and_cleans_up(self):
        client, container, _ = make_client()
        container.start.side_effect = APIError("OCI runtime create failed")

        outcome = run(SandboxExecutor(client=client))

        assert outcome.status == OutcomeStatus.CREATION_ERROR
        container.remove.assert_called_once_with(force=True)

    def test_attach_failure_is_creation_error(self):
        client, container, _ = make_client()
        container.attach_socket.side_effect = APIError("attach refused")

        outcome = run(SandboxExecutor(client=client))

        assert outcome.status == OutcomeStatus.CREATION_ERROR
        container.start.assert_not_called()
        container.remove.assert_called_once_with(force=True)

    @pytest.mark.parametrize("error", [BrokenPipeError(32, "Broken pipe"), ConnectionResetError(104, "reset")])
    def test_program_ignoring_stdin_still_passes(self, error):
        client, _, sock = make_client([encode_frame(STDOUT, b"hi\n")])
        sock.sendall.side_effect = error

        outcome = run(SandboxExecutor(client=client), code='print("hi")', stdin="unused input\n")

        assert outcome.status == OutcomeStatus.OK
        assert outcome.stdout == "hi\n"
        sock.close.assert_called_once()

    def test_read_failure_after_start_is_runtime_error(self):
        client, container, sock = make_client()
        sock.recv.side_effect = ConnectionResetError(104, "reset")

        outcome = run(SandboxExecutor(client=client))

        assert outcome.status == OutcomeStatus.RUNTIME_ERROR
        assert outcome.error_text.startswith("Execution interrupted")
        container.remove.assert_called_once_with(force=True)

    def test_wait_failure_after_start_is_runtime_error(self):
        client, container, _ = make_client([encode_frame(STDOUT, b"1\n")])
        container.wait.side_effect = APIError("wait failed")

        outcome = run(SandboxExecutor(client=client))

        assert outcome.status == OutcomeStatus.RUNTIME_ERROR

    def test_timeout_kills_container(self):
        client, container, sock = make_client()

        def slow_recv(size):
            time.sleep(0.3)
            return b""

        sock.recv.side_effect = slow_recv
        profile = LanguageProfile("python", "python:3.9", "main.py", "python main.py", timeout_ms=50)

        outcome = run(SandboxExecutor(client=client), profile=profile, code="while True: pass")

        assert outcome.status == OutcomeStatus.TIMED_OUT
        assert outcome.result.timed_out is True
        assert "Time Limit Exceeded" in outcome.error_text
        container.remove.assert_called_with(force=True)

    def test_source_too_large(self):
        client = MagicMock()

        outcome = run(SandboxExecutor(client=client), code="#" * (MAX_CODE_BYTES + 1))

        assert outcome.status == OutcomeStatus.RUNTIME_ERROR
        assert outcome.error_text == "Source code too large."
        client.containers.create.assert_not_called()


class TestCleanup:
    def test_removes_labelled_containers(self):
        client = MagicMock()
        leftovers = [MagicMock(), MagicMock()]
        client.containers.list.return_value = leftovers

        removed = SandboxExecutor(client=client).cleanup_orphans()

        assert removed == 2
        client.containers.list.assert_called_once_with(all=True, filters={"label": SANDBOX_LABEL})
        for container in leftovers:
            container.remove.assert_called_once_with(force=True)

    def test_daemon_unavailable(self):
        client = MagicMock()
        client.containers.list.side_effect = DockerException("down")

        assert SandboxExecutor(client=client).cleanup_orphans() == 0


def test_archive_layout():
    archive = _build_archive("main.py", "print('hi')")

    with tarfile.open(fileobj=io.BytesIO(archive)) as tar:
        member = tar.getmember("code/main.py")
        assert member.size == len("print('hi')")
        assert tar.getmember("code").isdir()


@pytest.mark.parametrize("language_id", ["python", "javascript", "cpp", "c", "java"])
def test_every_language_uses_its_own_image(language_id):
    client, _, _ = make_client()
    profile = LANGUAGE_PROFILES[language_id]

    run(SandboxExecutor(client=client), profile=profile)

    assert client.containers.create.call_args.args[0] == profile.sandbox_image
