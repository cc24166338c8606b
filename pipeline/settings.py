"""
Release pipeline settings, read from pipeline.yaml with CLI and environment overrides
"""

import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional

import yaml


REQUIRED_FIELDS = ("registry", "repository", "chart", "release", "namespace", "cosign_key")


@dataclass
class ReleaseSettings:
    """Everything the release chain needs to build, sign and deploy one image"""

    registry: str
    repository: str
    chart: str
    release: str
    namespace: str
    cosign_key: str
    tag: str = "dev"
    context: str = "."
    dockerfile: str = "Dockerfile"
    values: List[str] = field(default_factory=list)
    severity: str = "HIGH,CRITICAL"
    build_dir: str = "build"
    aws_region: str = "eu-west-1"
    helm_timeout: str = "10m"
    push_retries: int = 2

    @property
    def image(self) -> str:
        return f"{self.registry.rstrip('/')}/{self.repository}:{self.tag}"

    @property
    def sbom_path(self) -> str:
        return os.path.join(self.build_dir, "sbom.spdx.json")

    @property
    def rendered_dir(self) -> str:
        return os.path.join(self.build_dir, "rendered")

    @property
    def policies_path(self) -> str:
        return os.path.join(self.build_dir, "policies.yaml")

    @classmethod
    def from_dict(cls, data: Dict[str, Any], overrides: Optional[Dict[str, Any]] = None,
                  environ: Optional[Dict[str, str]] = None) -> "ReleaseSettings":
        """
        Build settings from a mapping

        Precedence: overrides (CLI flags), then the mapping, then COSIGN_KEY and
        AWS_REGION from the environment.

        Raises:
            ValueError: on unknown keys or missing required settings
        """
        environ = os.environ if environ is None else environ
        known = {f.name for f in fields(cls)}

        merged = dict(data or {})
        unknown = sorted(set(merged) - known)
        if unknown:
            raise ValueError(f"Unknown pipeline settings: {', '.join(unknown)}")

        merged.update({key: value for key, value in (overrides or {}).items() if value is not None})
        merged.setdefault("cosign_key", environ.get("COSIGN_KEY"))
        if "aws_region" not in merged and environ.get("AWS_REGION"):
            merged["aws_region"] = environ["AWS_REGION"]

        missing = [name for name in REQUIRED_FIELDS if not merged.get(name)]
        if missing:
            raise ValueError(f"Missing pipeline settings: {', '.join(missing)}")

        if isinstance(merged.get("values"), str):
            merged["values"] = [merged["values"]]

        return cls(**merged)

    @classmethod
    def from_file(cls, path: str, overrides: Optional[Dict[str, Any]] = None,
                  environ: Optional[Dict[str, str]] = None) -> "ReleaseSettings":
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{path} must contain a mapping of settings")
        return cls.from_dict(data, overrides, environ)
