from __future__ import annotations

import argparse
import os
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

DEFAULT_MATCH_LABEL = "mlops.cnvrg.io"
DEFAULT_HEALTH_PORT = 8080
DEFAULT_RETRY_ATTEMPTS = 5

_LABEL_NAME_RE = re.compile(r"^[A-Za-z0-9]([-A-Za-z0-9_.]{0,61}[A-Za-z0-9])?$")
_LABEL_PREFIX_RE = re.compile(
    r"^[a-z0-9]([-a-z0-9]{0,61}[a-z0-9])?(\.[a-z0-9]([-a-z0-9]{0,61}[a-z0-9])?)*$"
)
_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


class ConfigError(RuntimeError):
    """Raised when the controller configuration or kube credentials are invalid."""


@dataclass(frozen=True)
class ReloaderConfig:
    """Immutable controller configuration built once at startup.

    Attributes:
        match_label:    Label key joining a changed ConfigMap/Secret to the
                        workloads that consume it.
        kubeconfig:     Path to a kubeconfig file.  When the file does not
                        exist the in-cluster service account is used.
        verbose:        Enable debug logging with caller information.
        json_log:       Emit single-line JSON log records.
        health_port:    Port for ``/healthz``, ``/readyz`` and ``/metrics``
                        (``0`` disables the server).
        retry_attempts: Maximum attempts per workload list/patch call.
    """

    match_label: str = DEFAULT_MATCH_LABEL
    kubeconfig: str = ""
    verbose: bool = False
    json_log: bool = False
    health_port: int = DEFAULT_HEALTH_PORT
    retry_attempts: int = DEFAULT_RETRY_ATTEMPTS


def parse_bool(value: str | None) -> bool:
    if value is None:
        return False
    normalized = value.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    raise ValueError(f"expected a boolean (true|false), got: {value!r}")


def env_name(flag: str) -> str:
    """Return the environment variable overriding *flag* (``match-label`` -> ``MATCH_LABEL``)."""
    return flag.upper().replace("-", "_")


def _check_range(name: str, value: int, *, minimum: int | None, maximum: int | None) -> None:
    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")


def default_kubeconfig_path() -> str:
    home = Path.home()
    if not str(home):
        return ""
    return str(home / ".kube" / "config")


def validate_label_key(key: str) -> None:
    """Raise :class:`ConfigError` unless *key* is a valid Kubernetes label key.

    A key is ``[prefix/]name`` where the optional prefix is a DNS subdomain of
    at most 253 characters and the name is at most 63 characters.
    """
    if not key or key != key.strip():
        raise ConfigError(f"match label must be a non-empty label key, got: {key!r}")

    prefix, separator, name = key.rpartition("/")
    if separator and (not prefix or len(prefix) > 253 or not _LABEL_PREFIX_RE.match(prefix)):
        raise ConfigError(f"match label has an invalid prefix: {key!r}")
    if not _LABEL_NAME_RE.match(name):
        raise ConfigError(f"match label has an invalid name: {key!r}")


def _bool_arg(value: str) -> bool:
    try:
        return parse_bool(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def build_arg_parser(env: Mapping[str, str] | None = None) -> argparse.ArgumentParser:
    """Return the CLI parser; every flag defaults to its environment variable.

    Precedence is flag, then environment variable, then built-in default.
    Boolean flags accept ``--verbose`` as well as ``--verbose=true|false``.
    """
    values = env if env is not None else os.environ

    def env_default(flag: str, default: str) -> str:
        return values.get(env_name(flag), default)

    parser = argparse.ArgumentParser(
        prog="cre",
        description="cre - config reloader for K8s",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        type=_bool_arg,
        nargs="?",
        const=True,
        default=env_default("verbose", "false"),
        help="--verbose=true|false",
    )
    parser.add_argument(
        "--match-label",
        default=env_default("match-label", DEFAULT_MATCH_LABEL),
        help="label to use for matching",
    )
    parser.add_argument(
        "-J",
        "--json-log",
        type=_bool_arg,
        nargs="?",
        const=True,
        default=env_default("json-log", "false"),
        help="--json-log=true|false",
    )
    parser.add_argument(
        "--kubeconfig",
        default=env_default("kubeconfig", default_kubeconfig_path()),
        help="absolute path to the kubeconfig file",
    )
    parser.add_argument(
        "--health-port",
        type=int,
        default=env_default("health-port", str(DEFAULT_HEALTH_PORT)),
        help="port serving /healthz, /readyz and /metrics (0 disables)",
    )
    parser.add_argument(
        "--retry-attempts",
        type=int,
        default=env_default("retry-attempts", str(DEFAULT_RETRY_ATTEMPTS)),
        help="maximum attempts per workload list or patch call",
    )
    return parser


def load_config(
    argv: Sequence[str] | None = None,
    env: Mapping[str, str] | None = None,
) -> ReloaderConfig:
    """Parse *argv* (falling back to environment variables) into a :class:`ReloaderConfig`.

    ``argparse`` applies ``type`` conversion to string defaults, so values
    taken from the environment are validated exactly like explicit flags;
    a malformed value exits with status 2 through ``parser.error``.
    """
    parser = build_arg_parser(env)
    args = parser.parse_args(argv)

    try:
        validate_label_key(args.match_label)
        _check_range(env_name("health-port"), args.health_port, minimum=0, maximum=65535)
        _check_range(env_name("retry-attempts"), args.retry_attempts, minimum=1, maximum=None)
    except ConfigError as exc:
        parser.error(str(exc))

    return ReloaderConfig(
        match_label=args.match_label,
        kubeconfig=args.kubeconfig,
        verbose=args.verbose,
        json_log=args.json_log,
        health_port=args.health_port,
        retry_attempts=args.retry_attempts,
    )
