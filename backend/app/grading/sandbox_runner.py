import asyncio
import io
import logging
import socket
import tarfile
import time
import uuid
from typing import Optional, Tuple

import docker
from docker.errors import DockerException, ImageNotFound, NotFound
from starlette.concurrency import run_in_threadpool

from .errors import SandboxCreationError
from .frames import demux
from .languages import LanguageProfile
from .models import ExecutionOutcome

logger = logging.getLogger(__name__)

SANDBOX_LABEL = "quizgrader.sandbox"
CODE_DIR = "code"

MAX_CODE_BYTES = 64000
MAX_OUTPUT_CHARS = 32000
READ_CHUNK = 4096


def _build_archive(file_name: str, source_code: str) -> bytes:
    """Tar holding /code/<file_name>; the only input the container gets."""
    data = source_code.encode("utf-8")
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        dir_info = tarfile.TarInfo(CODE_DIR)
        dir_info.type = tarfile.DIRTYPE
        dir_info.mode = 0o777
        dir_info.mtime = int(time.time())
        tar.addfile(dir_info)

        file_info = tarfile.TarInfo(f"{CODE_DIR}/{file_name}")
        file_info.size = len(data)
        file_info.mode = 0o644
        file_info.mtime = int(time.time())
        tar.addfile(file_info, io.BytesIO(data))
    return buf.getvalue()


def _raw_socket(attached):
    # docker-py hands back a SocketIO wrapper on unix sockets
    return getattr(attached, "_sock", attached)


def _truncate(text: str, label: str) -> str:
    if len(text) > MAX_OUTPUT_CHARS:
        return text[:MAX_OUTPUT_CHARS] + f"\n...[{label} truncated]..."
    return text


class SandboxExecutor:
    """
    Runs one program once inside a throwaway Docker container.

    Every call gets a fresh container: no network, capped memory and CPU,
    no capabilities, and it is removed whatever happens. The docker SDK is
    blocking, so every call goes through the thread pool.
    """

    def __init__(
        self,
        client: Optional[docker.DockerClient] = None,
        memory_limit: str = "128m",
        nano_cpus: int = 500_000_000,
        pids_limit: int = 64,
        pull_missing_images: bool = True,
    ):
        self._client = client
        self.memory_limit = memory_limit
        self.nano_cpus = nano_cpus
        self.pids_limit = pids_limit
        self.pull_missing_images = pull_missing_images

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    # ============================================================
    # Blocking helpers (run in thread pool)
    # ============================================================

    def _create_container(self, profile: LanguageProfile, source_code: str):
        kwargs = dict(
            command=["sh", "-c", profile.run_command],
            name=f"sandbox_{uuid.uuid4().hex[:12]}",
            working_dir=f"/{CODE_DIR}",
            stdin_open=True,
            stdin_once=True,
            tty=False,
            network_disabled=True,
            mem_limit=self.memory_limit,
            memswap_limit=self.memory_limit,
            nano_cpus=self.nano_cpus,
            pids_limit=self.pids_limit,
            cap_drop=["ALL"],
            security_opt=["no-new-privileges"],
            labels={SANDBOX_LABEL: profile.id},
        )
        try:
            container = self.client.containers.create(profile.sandbox_image, **kwargs)
        except ImageNotFound:
            if not self.pull_missing_images:
                raise
            logger.info(f"Pulling sandbox image {profile.sandbox_image}")
            self.client.images.pull(profile.sandbox_image)
            container = self.client.containers.create(profile.sandbox_image, **kwargs)

        try:
            container.put_archive("/", _build_archive(profile.file_name, source_code))
        except Exception:
            self._destroy(container)
            raise
        return container

    def _attach_and_run(self, container, stdin: str) -> Tuple[bytes, int]:
        """
        Start the container, feed stdin and read output to EOF.

        Only failures before the program starts raise SandboxCreationError;
        anything later is an I/O problem of this one run.
        """
        try:
            attached = container.attach_socket(
                params={"stdin": 1, "stdout": 1, "stderr": 1, "stream": 1}
            )
        except (DockerException, OSError) as e:
            raise SandboxCreationError(f"attach failed: {e}") from e

        sock = _raw_socket(attached)
        try:
            try:
                container.start()
            except (DockerException, OSError) as e:
                raise SandboxCreationError(str(e)) from e

            try:
                if stdin:
                    sock.sendall(stdin.encode("utf-8"))
                sock.shutdown(socket.SHUT_WR)
            except (BrokenPipeError, ConnectionResetError):
                # program exited or closed stdin without reading all of it
                pass

            chunks = []
            while True:
                chunk = sock.recv(READ_CHUNK)
                if not chunk:
                    break
                chunks.append(chunk)
        finally:
            sock.close()

        exit_code = container.wait().get("StatusCode", -1)
        return b"".join(chunks), exit_code

    def _destroy(self, container):
        try:
            container.remove(force=True)
        except NotFound:
            pass
        except (DockerException, OSError) as e:
            logger.warning(f"Failed to remove container {container.name}: {e}")

    def cleanup_orphans(self) -> int:
        """Remove sandbox containers left behind by a crashed process."""
        removed = 0
        try:
            containers = self.client.containers.list(all=True, filters={"label": SANDBOX_LABEL})
        except (DockerException, OSError) as e:
            logger.warning(f"Sandbox cleanup skipped: {e}")
            return 0

        for container in containers:
            logger.info(f"Removing orphaned sandbox {container.name}")
            self._destroy(container)
            removed += 1
        return removed

    # ============================================================
    # Public API
    # ============================================================

    async def run(self, profile: LanguageProfile, source_code: str, stdin: str = "") -> ExecutionOutcome:
        """Run `source_code` once with `stdin`; never raises for sandbox problems."""
        if len(source_code.encode("utf-8")) > MAX_CODE_BYTES:
            return ExecutionOutcome.runtime_error("", "", "Source code too large.")

        try:
            container = await run_in_threadpool(self._create_container, profile, source_code)
        except (DockerException, OSError) as e:
            logger.error(f"Sandbox creation failed for {profile.id}: {e}")
            return ExecutionOutcome.creation_error(f"SandboxUnavailable: {e}")

        run_task = asyncio.ensure_future(run_in_threadpool(self._attach_and_run, container, stdin))
        try:
            done, _ = await asyncio.wait({run_task}, timeout=profile.timeout_sec)
        finally:
            await run_in_threadpool(self._destroy, container)

        if not done:
            # the reader thread returns once the killed container closes the stream
            await asyncio.gather(run_task, return_exceptions=True)
            logger.warning(f"Sandbox {container.name} exceeded {profile.timeout_sec:g}s, killed")
            return ExecutionOutcome.timed_out(profile.timeout_sec)

        try:
            raw, exit_code = run_task.result()
        except SandboxCreationError as e:
            logger.error(f"Sandbox {container.name} failed to start: {e}")
            return ExecutionOutcome.creation_error(f"SandboxUnavailable: {e}")
        except (DockerException, OSError) as e:
            logger.warning(f"Sandbox {container.name} lost its stream mid-run: {e}")
            return ExecutionOutcome.runtime_error("", "", f"Execution interrupted: {e}")

        stdout_bytes, stderr_bytes = demux(raw)
        stdout = _truncate(stdout_bytes.decode("utf-8", errors="replace"), "output")
        stderr = _truncate(stderr_bytes.decode("utf-8", errors="replace"), "stderr")

        if exit_code != 0 or stderr.strip():
            return ExecutionOutcome.runtime_error(
                stdout, stderr, stderr.strip() or f"Exited {exit_code}"
            )

        return ExecutionOutcome.ok(stdout, stderr)
