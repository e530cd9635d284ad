"""Prometheus file-based service discovery and the instance bootstrap script."""

import json
import os
from pathlib import Path
from typing import Optional

import structlog

logger = structlog.get_logger(__name__)

NODE_EXPORTER_PORT = 9100

CLOUD_INIT_SCRIPT = """#cloud-config
packages:
  - docker.io

runcmd:
  - |
    docker run -d \\
      --name=node-exporter \\
      --restart=always \\
      --net="host" \\
      --pid="host" \\
      -v "/:/host:ro,rslave" \\
      quay.io/prometheus/node-exporter:latest \\
      --path.rootfs=/host
  - |
    docker run -d \\
      --name=cadvisor \\
      --restart=always \\
      --volume=/:/rootfs:ro \\
      --volume=/var/run:/var/run:ro \\
      --volume=/sys:/sys:ro \\
      --volume=/var/lib/docker/:/var/lib/docker:ro \\
      --publish=8080:8080 \\
      --privileged \\
      gcr.io/cadvisor/cadvisor:latest
"""


def cloud_init_script() -> str:
    """User-data that starts node-exporter and cAdvisor on first boot."""
    return CLOUD_INIT_SCRIPT


class PrometheusTargetManager:
    """Writes one JSON target file per monitored instance into a file_sd directory.

    With no directory configured every call is a no-op.
    """

    def __init__(self, targets_dir: Optional[str]):
        self.targets_dir = Path(targets_dir) if targets_dir else None

    @property
    def enabled(self) -> bool:
        return self.targets_dir is not None

    def unregister_instance(self, instance_id: str) -> None:
        self._remove(f"{instance_id}.json")

    def register_database(
        self,
        instance_ip: str,
        instance_id: str,
        database_id: str,
        project_id: str,
        database_name: str,
        engine: str,
    ) -> None:
        self._write(
            f"db-{database_id}.json",
            [f"{instance_ip}:{NODE_EXPORTER_PORT}"],
            {
                "instance_id": instance_id,
                "database_id": database_id,
                "project_id": project_id,
                "database_name": database_name,
                "engine": engine,
                "job": "conveyor-databases",
            },
        )

    def unregister_database(self, database_id: str) -> None:
        self._remove(f"db-{database_id}.json")

    def _write(self, filename: str, targets: list[str], labels: dict[str, str]) -> None:
        if self.targets_dir is None:
            return
        self.targets_dir.mkdir(parents=True, exist_ok=True)
        path = self.targets_dir / filename
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps([{"targets": targets, "labels": labels}], indent=2))
        # Prometheus may read the directory at any time
        os.replace(tmp, path)
        logger.info("telemetry_target_registered", file=str(path))

    def _remove(self, filename: str) -> None:
        if self.targets_dir is None:
            return
        path = self.targets_dir / filename
        path.unlink(missing_ok=True)
        logger.info("telemetry_target_unregistered", file=str(path))
