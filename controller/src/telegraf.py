from __future__ import annotations

import copy
import dataclasses
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any

import toml

from controller.src.classdata import ClassDataStore
from shared.src import metadata

DEFAULT_METRICS_PATH = "/metrics"
DEFAULT_SCHEME = "http"
DEFAULT_METRIC_VERSION = 1
SUPPORTED_METRIC_VERSIONS = frozenset({1, 2})

_NANOSECOND = 1
_MICROSECOND = 1_000 * _NANOSECOND
_MILLISECOND = 1_000 * _MICROSECOND
_SECOND = 1_000 * _MILLISECOND
_MINUTE = 60 * _SECOND
_HOUR = 60 * _MINUTE

DEFAULT_INTERVAL = 10 * _SECOND

_DURATION_UNITS = {
    "ns": _NANOSECOND,
    "us": _MICROSECOND,
    "µs": _MICROSECOND,
    "μs": _MICROSECOND,
    "ms": _MILLISECOND,
    "s": _SECOND,
    "m": _MINUTE,
    "h": _HOUR,
}
_DURATION_PART = re.compile(r"(\d+\.?\d*|\.\d+)(ns|us|µs|μs|ms|s|m|h)")


class ConfigBuildError(RuntimeError):
    """Raised when a Telegraf configuration document cannot be produced."""


class ClassNotFoundError(ConfigBuildError):
    """The requested class name has no loaded class document."""


class RawInputParseError(ConfigBuildError):
    """The raw ``inputs`` annotation is not valid TOML."""


class SerializationError(ConfigBuildError):
    """The merged document could not be rendered back to TOML."""


def parse_duration(value: str) -> int:
    """Parse a Go style duration (``10s``, ``1m30s``, ``250ms``) into nanoseconds.

    Negative durations are rejected since they are meaningless as intervals.
    """
    text = value.strip()
    if text.startswith("+"):
        text = text[1:]
    if text == "0":
        return 0
    if not text or text.startswith("-"):
        raise ValueError(f"invalid duration {value!r}")

    total = Decimal(0)
    position = 0
    while position < len(text):
        match = _DURATION_PART.match(text, position)
        if match is None:
            raise ValueError(f"invalid duration {value!r}")
        try:
            amount = Decimal(match.group(1))
        except InvalidOperation as exc:
            raise ValueError(f"invalid duration {value!r}") from exc
        total += amount * _DURATION_UNITS[match.group(2)]
        position = match.end()
    return int(total)


def _with_fraction(value: int, scale: int) -> str:
    whole, fraction = divmod(value, scale)
    if not fraction:
        return str(whole)
    digits = len(str(scale)) - 1
    return f"{whole}.{fraction:0{digits}d}".rstrip("0")


def format_duration(nanoseconds: int) -> str:
    """Render *nanoseconds* the way Go's ``Duration.String`` does (``1m0s``, ``1.5s``)."""
    if nanoseconds == 0:
        return "0s"
    sign = "-" if nanoseconds < 0 else ""
    remaining = abs(nanoseconds)
    if remaining < _SECOND:
        for unit, scale in (("ms", _MILLISECOND), ("µs", _MICROSECOND), ("ns", _NANOSECOND)):
            if remaining >= scale:
                return f"{sign}{_with_fraction(remaining, scale)}{unit}"

    hours, remaining = divmod(remaining, _HOUR)
    minutes, remaining = divmod(remaining, _MINUTE)
    seconds = _with_fraction(remaining, _SECOND)
    if hours:
        return f"{sign}{hours}h{minutes}m{seconds}s"
    if minutes:
        return f"{sign}{minutes}m{seconds}s"
    return f"{sign}{seconds}s"


@dataclass
class TelegrafOverrides:
    """One pod's Telegraf settings, defaults first, then annotation overrides."""

    class_name: str
    metrics_path: str = DEFAULT_METRICS_PATH
    scheme: str = DEFAULT_SCHEME
    metric_version: int = DEFAULT_METRIC_VERSION
    interval: int = DEFAULT_INTERVAL
    namepass: str = ""
    enable_internal: bool = False
    raw_input: str = ""
    ports: list[int] = field(default_factory=list)
    global_tags: dict[str, str] = field(default_factory=dict)

    @property
    def interval_text(self) -> str:
        return format_duration(self.interval)

    def scrape_urls(self) -> list[str]:
        return [f"{self.scheme}://localhost:{port}{self.metrics_path}" for port in self.ports]

    def namepass_patterns(self) -> list[str]:
        if not self.namepass:
            return []
        return [item.strip() for item in self.namepass.split(",") if item.strip()]


@dataclass(frozen=True)
class OverrideResult:
    """Overrides plus the advisory warnings produced while applying them.

    Warnings never stop secret creation; callers surface them (event, log)
    and carry on with ``overrides``.
    """

    overrides: TelegrafOverrides
    warnings: tuple[str, ...] = ()

    @property
    def message(self) -> str:
        return "; ".join(self.warnings)


def _parse_port(value: str) -> int:
    port = int(value.strip())
    if not 0 < port < 65536:
        raise ValueError(f"port {port} is out of range 1-65535")
    return port


def apply_annotation_overrides(
    defaults: TelegrafOverrides, annotations: Mapping[str, str] | None
) -> OverrideResult:
    """Return a copy of *defaults* with the pod's Telegraf annotations applied.

    Every unparsable value keeps the prior value and adds a warning.
    Ports from the deprecated single-port annotation come first, followed
    by the multi-port list in order; duplicates are kept as given.
    """
    annotations = annotations or {}
    overrides = dataclasses.replace(
        defaults, ports=list(defaults.ports), global_tags=dict(defaults.global_tags)
    )
    warnings: list[str] = []

    class_name = annotations.get(metadata.TELEGRAF_CLASS_ANNOTATION)
    if class_name is not None:
        overrides.class_name = class_name

    port = annotations.get(metadata.TELEGRAF_PORT_ANNOTATION)
    if port is not None:
        warnings.append(
            f"Deprecated: {metadata.TELEGRAF_PORT_ANNOTATION} will be removed in a future "
            f"version, use {metadata.TELEGRAF_PORTS_ANNOTATION} instead."
        )
        try:
            overrides.ports.append(_parse_port(port))
        except ValueError as exc:
            warnings.append(
                f"failed to convert value: {port} for {metadata.TELEGRAF_PORT_ANNOTATION} "
                f"to integer, error: {exc}"
            )

    ports = annotations.get(metadata.TELEGRAF_PORTS_ANNOTATION)
    if ports is not None:
        for item in ports.split(","):
            try:
                overrides.ports.append(_parse_port(item))
            except ValueError as exc:
                warnings.append(
                    f"failed to convert value: {item.strip()} for "
                    f"{metadata.TELEGRAF_PORTS_ANNOTATION} to integer, error: {exc}"
                )

    path = annotations.get(metadata.TELEGRAF_PATH_ANNOTATION)
    if path is not None:
        overrides.metrics_path = path

    scheme = annotations.get(metadata.TELEGRAF_SCHEME_ANNOTATION)
    if scheme is not None:
        overrides.scheme = scheme

    namepass = annotations.get(metadata.TELEGRAF_NAMEPASS_ANNOTATION)
    if namepass is not None:
        overrides.namepass = namepass.strip("[]").replace("'", "")

    metric_version = annotations.get(metadata.TELEGRAF_METRIC_VERSION_ANNOTATION)
    if metric_version is not None:
        try:
            version = int(metric_version.strip())
        except ValueError as exc:
            warnings.append(
                f"failed to convert value: {metric_version} for "
                f"{metadata.TELEGRAF_METRIC_VERSION_ANNOTATION} to integer, error: {exc}"
            )
        else:
            if version in SUPPORTED_METRIC_VERSIONS:
                overrides.metric_version = version
            else:
                warnings.append(
                    f"unsupported value: {metric_version} for "
                    f"{metadata.TELEGRAF_METRIC_VERSION_ANNOTATION}, must be 1 or 2"
                )

    interval = annotations.get(metadata.TELEGRAF_INTERVAL_ANNOTATION)
    if interval is not None:
        try:
            overrides.interval = parse_duration(interval)
        except ValueError as exc:
            warnings.append(
                f"failed to convert value: {interval} for "
                f"{metadata.TELEGRAF_INTERVAL_ANNOTATION} to duration, error: {exc}"
            )

    if annotations.get(metadata.TELEGRAF_INTERNAL_ANNOTATION):
        overrides.enable_internal = True

    raw_input = annotations.get(metadata.TELEGRAF_RAW_INPUT_ANNOTATION)
    if raw_input is not None:
        overrides.raw_input = raw_input

    overrides.global_tags.update(
        metadata.annotations_with_prefix(annotations, metadata.TELEGRAF_GLOBAL_TAG_LITERAL_PREFIX)
    )

    return OverrideResult(overrides=overrides, warnings=tuple(warnings))


class TelegrafConfigBuilder:
    """Assembles ``telegraf.conf`` for a pod from a class and its annotations.

    The merge order is fixed:

    1. The class document is the base.
    2. A ``[[inputs.prometheus]]`` block is synthesized when ports are set.
    3. ``[[inputs.internal]]`` is added when the internal plugin is enabled.
    4. Input plugins from the raw ``inputs`` annotation replace any
       same-named plugin from the previous steps.
    5. Literal global tags are merged into ``[global_tags]``.
    """

    def __init__(
        self,
        class_data: ClassDataStore,
        default_class: str = "default",
        enable_internal: bool = False,
    ) -> None:
        self.class_data = class_data
        self.default_class = default_class
        self.enable_internal = enable_internal

    def defaults(self) -> TelegrafOverrides:
        return TelegrafOverrides(
            class_name=self.default_class,
            enable_internal=self.enable_internal,
        )

    def apply_annotation_overrides(self, annotations: Mapping[str, str] | None) -> OverrideResult:
        return apply_annotation_overrides(self.defaults(), annotations)

    def _class_document(self, class_name: str) -> dict[str, Any]:
        class_text = self.class_data.get(class_name)
        if class_text is None:
            raise ClassNotFoundError(
                f"failed to get class data: {class_name}, class name doesn't exist"
            )
        try:
            return toml.loads(class_text)
        except toml.TomlDecodeError as exc:
            raise ConfigBuildError(f"failed to parse class data for {class_name}: {exc}") from exc

    @staticmethod
    def _table(document: dict[str, Any], key: str) -> dict[str, Any]:
        table = document.get(key)
        if not isinstance(table, dict):
            table = {}
            document[key] = table
        return table

    def build_config_data(self, overrides: TelegrafOverrides) -> str:
        """Return the rendered TOML document, raising :class:`ConfigBuildError` on failure."""
        document = self._class_document(overrides.class_name)
        inputs = self._table(document, "inputs")
        global_tags = self._table(document, "global_tags")

        if overrides.ports:
            prometheus: dict[str, Any] = {
                "urls": overrides.scrape_urls(),
                "interval": overrides.interval_text,
                "metric_version": overrides.metric_version,
            }
            namepass = overrides.namepass_patterns()
            if namepass:
                prometheus["namepass"] = namepass
            inputs["prometheus"] = [prometheus]

        if overrides.enable_internal:
            inputs["internal"] = [{}]

        raw_input = overrides.raw_input.strip()
        if raw_input:
            try:
                raw_document = toml.loads(raw_input)
            except toml.TomlDecodeError as exc:
                raise RawInputParseError(
                    f"failed to parse raw input annotation data, error: {exc}"
                ) from exc
            raw_inputs = raw_document.get("inputs")
            if isinstance(raw_inputs, dict):
                for plugin, plugin_config in raw_inputs.items():
                    inputs[plugin] = copy.deepcopy(plugin_config)

        global_tags.update(overrides.global_tags)

        try:
            return toml.dumps(document)
        except (TypeError, ValueError) as exc:
            raise SerializationError(f"failed to render final toml output, error: {exc}") from exc
