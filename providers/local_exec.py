"""
providers/local_exec.py

LocalExec provider — runs a shell command on the machine doing the apply,
once, when the resource is created.

Typical use is recording an address once it is known. References must be the
whole string, so values reach the command through `environment`:

    {"kind": "LocalExec", "name": "record-ip",
     "attributes": {"command": "echo $PUBLIC_IP > ip.txt",
                    "environment": {"PUBLIC_IP": "${Address.web-ip.public_ip}"}}}

Every attribute is immutable: changing the command, its environment or any
trigger value re-runs it (Replace). Destroy only forgets the run.
"""

import os
import subprocess
import uuid
from typing import Any, Dict, Tuple

from .base import Provider, computed, immutable, make_schema

DEFAULT_TIMEOUT = int(os.getenv("RECONCILER_LOCAL_EXEC_TIMEOUT", "300"))


class LocalExecProvider(Provider):
    kind = "LocalExec"
    schema = make_schema(
        "LocalExec",
        command=immutable(required=True),
        environment=immutable(),
        working_dir=immutable(),
        triggers=immutable(),
        id=computed(),
        exit_code=computed(),
    )

    def __init__(self, timeout: int = DEFAULT_TIMEOUT):
        self.timeout = timeout

    def create(self, attributes: Dict[str, Any], log=print) -> Tuple[str, Dict[str, Any]]:
        command = attributes["command"]
        env = dict(os.environ)
        env.update({str(k): str(v) for k, v in (attributes.get("environment") or {}).items()})

        log(f"  $ {command}")
        try:
            completed = subprocess.run(
                command,
                shell=True,
                cwd=attributes.get("working_dir") or None,
                env=env,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as ex:
            raise RuntimeError(f"Command timed out after {self.timeout}s: {command}") from ex
        except OSError as ex:
            raise RuntimeError(f"Command could not be started: {ex}") from ex

        for line in completed.stdout.splitlines():
            log(f"    {line}")
        for line in completed.stderr.splitlines():
            log(f"    ⚠ {line}")

        if completed.returncode != 0:
            raise RuntimeError(f"Command exited with status {completed.returncode}: {command}")

        run_id = f"exec-{uuid.uuid4().hex[:12]}"
        return run_id, {"id": run_id, "exit_code": completed.returncode}

    def update(self, provider_id: str, old: Dict[str, Any], new: Dict[str, Any], log=print) -> Dict[str, Any]:
        raise RuntimeError("LocalExec cannot be updated in place.")

    def destroy(self, provider_id: str, log=print) -> None:
        # Nothing to undo — the command already ran.
        return None
