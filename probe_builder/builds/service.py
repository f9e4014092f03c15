"""Run controller and failure aggregation.

This module provides the high-level build API:
- run() / run_custom(): drive the matrix for a scope
- build_family() / build_custom(): fetch, group and build one family
- build_target(): cache gate, toolchain resolution and containerized build
- render_failure_report(): the cumulative report printed before exit

Targets are processed strictly one after another; only the fetch phase runs
in parallel. Every per-target error is recorded as a Failed outcome and the
run moves on.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

from probe_builder.builds.cache_key import (
    artifact_keys,
    is_built,
    missing_artifacts,
)
from probe_builder.builds.runner import (
    BuildExecutionError,
    ensure_image,
    read_log_excerpt,
    run_build,
)
from probe_builder.builds.toolchain import (
    ToolchainCatalog,
    ToolchainError,
    container_name,
    image_reference,
    load_catalog,
    resolve_for_target,
)
from probe_builder.config import ConfigurationError, Settings, require_build_parameters
from probe_builder.kernels.extract import ExtractionError
from probe_builder.kernels.fetch import fetch_kernels, read_url_list
from probe_builder.kernels.pipeline import DistroPipeline, KernelPackageSet, PipelineError
from probe_builder.kernels.registry import get_custom_pipeline, get_pipeline
from probe_builder.types import (
    FETCHED_FAMILIES,
    BuildOutcome,
    BuildStatus,
    BuildTarget,
    Family,
    FetchOutcome,
)

logger = logging.getLogger(__name__)

# Errors that fail a single target without stopping the run
TARGET_ERRORS = (
    PipelineError,
    ExtractionError,
    ToolchainError,
    BuildExecutionError,
    OSError,
)


@dataclass
class RunContext:
    """State of one invocation.

    Attributes:
        settings: Effective settings.
        built_images: Toolchain images built or pulled so far.
        catalogs: Toolchain catalogs loaded so far, by base distro.
        outcomes: One outcome per processed target.
        fetches: One outcome per attempted download.
    """

    settings: Settings
    built_images: set[str] = field(default_factory=set)
    catalogs: dict[str, ToolchainCatalog] = field(default_factory=dict)
    outcomes: list[BuildOutcome] = field(default_factory=list)
    fetches: list[FetchOutcome] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def record(self, outcome: BuildOutcome) -> None:
        with self._lock:
            self.outcomes.append(outcome)

    def record_fetches(self, fetches: Iterable[FetchOutcome]) -> None:
        with self._lock:
            self.fetches.extend(fetches)

    def catalog(self, distro: str) -> ToolchainCatalog:
        """Return the catalog of a base distro, loading it on first use."""
        with self._lock:
            if distro not in self.catalogs:
                self.catalogs[distro] = load_catalog(self.settings.builder_dir, distro)
            return self.catalogs[distro]

    def _with_status(self, status: BuildStatus) -> list[BuildOutcome]:
        return [o for o in self.outcomes if o.status == status]

    @property
    def failed(self) -> list[BuildOutcome]:
        return self._with_status(BuildStatus.FAILED)

    @property
    def succeeded(self) -> list[BuildOutcome]:
        return self._with_status(BuildStatus.SUCCESS)

    @property
    def skipped(self) -> list[BuildOutcome]:
        return self._with_status(BuildStatus.SKIPPED)

    @property
    def failed_fetches(self) -> list[FetchOutcome]:
        return [f for f in self.fetches if not f.success]

    @property
    def has_failures(self) -> bool:
        """Whether the run counts as failed."""
        if self.failed:
            return True
        return bool(self.settings.strict_fetch and self.failed_fetches)

    @property
    def exit_code(self) -> int:
        return 1 if self.has_failures else 0


def build_target(ctx: RunContext, target: BuildTarget) -> BuildOutcome:
    """Build the probe for one target unless its artifacts already exist.

    Args:
        ctx: Run context.
        target: Target derived by a pipeline.

    Returns:
        Success, Failed or Skipped outcome.

    Raises:
        ToolchainError: If no builder can be chosen.
        BuildExecutionError: If the image or container cannot be run.
    """
    settings = ctx.settings
    probe_name = str(settings.probe_name)
    probe_version = str(settings.probe_version)

    if is_built(target, settings.output_dir, probe_name, probe_version):
        logger.info("%s already built, skipping", target.label)
        return BuildOutcome(
            target=target, status=BuildStatus.SKIPPED, label=target.label
        )

    variant = resolve_for_target(target, ctx.catalog(target.builder_distro))
    image = image_reference(variant, settings.builder_image_prefix)
    ensure_image(
        variant,
        image,
        ctx.built_images,
        pull=bool(settings.builder_image_prefix),
        docker=settings.docker_binary,
    )

    result = run_build(
        target,
        image,
        container_name(variant),
        probe_name,
        probe_version,
        Path(str(settings.probe_source_dir)),
        settings.output_dir,
        docker=settings.docker_binary,
        timeout=settings.build_timeout,
    )
    try:
        if not result.success:
            return BuildOutcome(
                target=target,
                status=BuildStatus.FAILED,
                label=target.label,
                log_excerpt=read_log_excerpt(
                    result.log_path, settings.log_excerpt_lines
                ),
                builder=variant.name,
            )
    finally:
        result.log_path.unlink(missing_ok=True)

    missing = missing_artifacts(target, settings.output_dir, probe_name, probe_version)
    if missing:
        logger.warning(
            "%s: build succeeded but %s not found in %s",
            target.label,
            ", ".join(k.filename for k in missing),
            settings.output_dir,
        )
    produced = [
        k.filename
        for k in artifact_keys(target, probe_name, probe_version)
        if k not in missing
    ]
    logger.info("%s built with %s", target.label, variant.name)
    return BuildOutcome(
        target=target,
        status=BuildStatus.SUCCESS,
        label=target.label,
        builder=variant.name,
        artifacts=produced,
    )


def _failure_label(pipeline: DistroPipeline, package_set: KernelPackageSet) -> str:
    return f"{pipeline.family.value} {package_set.label}"


def process_package_set(
    ctx: RunContext,
    pipeline: DistroPipeline,
    package_set: KernelPackageSet,
) -> BuildOutcome:
    """Take one package set through unpack, derive and build.

    Any per-target error becomes a Failed outcome; nothing propagates.
    """
    target: BuildTarget | None = None
    try:
        target = pipeline.prepare(package_set)
        outcome = build_target(ctx, target)
    except TARGET_ERRORS as e:
        label = target.label if target else _failure_label(pipeline, package_set)
        logger.error("%s failed: %s", label, e)
        excerpt = str(e)
        log_path = getattr(e, "log_path", None)
        if log_path is not None:
            log = read_log_excerpt(log_path, ctx.settings.log_excerpt_lines)
            excerpt = f"{log}\n{excerpt}" if log else excerpt
            log_path.unlink(missing_ok=True)
        outcome = BuildOutcome(
            target=target,
            status=BuildStatus.FAILED,
            label=label,
            log_excerpt=excerpt,
        )

    ctx.record(outcome)
    return outcome


def build_package_sets(
    ctx: RunContext,
    pipeline: DistroPipeline,
    archives: Iterable[Path],
) -> list[BuildOutcome]:
    """Group archives and process every resulting package set in order."""
    package_sets = pipeline.group(archives)
    logger.info(
        "%d %s kernel(s) to process", len(package_sets), pipeline.family.value
    )
    return [process_package_set(ctx, pipeline, ps) for ps in package_sets]


def family_urls(
    settings: Settings,
    family: Family,
    urls_file: Path | None = None,
) -> list[str]:
    """Return the kernel URLs of a family.

    An explicit list file wins over kernel_list_dir/<family>.txt. Without
    either, no URLs are fetched.
    """
    if urls_file is not None:
        return read_url_list(urls_file)
    if settings.kernel_list_dir is not None:
        path = settings.kernel_list_dir / f"{family.value}.txt"
        if path.is_file():
            return read_url_list(path)
        logger.warning("No kernel list for %s at %s", family.value, path)
    return []


def build_family(
    ctx: RunContext,
    family: Family,
    urls_file: Path | None = None,
) -> list[BuildOutcome]:
    """Fetch and build every kernel of one distribution family.

    Args:
        ctx: Run context.
        family: Family to build.
        urls_file: Optional explicit URL list.

    Returns:
        Outcomes of this family's targets.
    """
    settings = ctx.settings
    pipeline = get_pipeline(family, settings.work_dir, settings.arch)

    concurrency = settings.fetch_concurrency
    if pipeline.serial_fetch and concurrency:
        concurrency = 1
    fetches = fetch_kernels(
        family,
        family_urls(settings, family, urls_file),
        pipeline.download_dir,
        concurrency=concurrency,
        retries=settings.fetch_retries,
        timeout=settings.fetch_timeout,
    )
    ctx.record_fetches(fetches)

    # A failed download may leave a partial file behind
    incomplete = {f.path for f in fetches if not f.success and f.path is not None}
    archives = [a for a in pipeline.discover_archives() if a not in incomplete]
    return build_package_sets(ctx, pipeline, archives)


def build_custom(
    ctx: RunContext,
    base: Family,
    archives: Iterable[Path],
    builder: str | None = None,
) -> list[BuildOutcome]:
    """Build operator-supplied archives following a base family's conventions."""
    settings = ctx.settings
    pipeline = get_custom_pipeline(
        base,
        archives,
        settings.work_dir,
        settings.arch,
        builder_override=builder,
    )
    return build_package_sets(ctx, pipeline, pipeline.discover_archives())


def _start(settings: Settings) -> RunContext:
    require_build_parameters(settings)
    settings.output_dir.mkdir(parents=True, exist_ok=True)
    return RunContext(settings=settings)


def run(
    settings: Settings,
    family: Family | None = None,
    urls_file: Path | None = None,
) -> RunContext:
    """Drive the build matrix for every family or one named family.

    Raises:
        ConfigurationError: If mandatory parameters are missing, before any
            fetch or build work.
    """
    if family == Family.CUSTOM:
        raise ConfigurationError(
            "The custom family needs archives, use run_custom",
            code="invalid_scope",
        )
    if urls_file is not None and family is None:
        raise ConfigurationError(
            "A URL list applies to a single family",
            code="invalid_scope",
        )

    ctx = _start(settings)
    families = FETCHED_FAMILIES if family is None else (family,)
    for name in families:
        build_family(ctx, name, urls_file)
    _log_summary(ctx)
    return ctx


def run_custom(
    settings: Settings,
    base: Family,
    archives: Iterable[Path],
    builder: str | None = None,
) -> RunContext:
    """Drive the build matrix for a custom archive set.

    Raises:
        ConfigurationError: If mandatory parameters are missing or an
            archive does not exist.
    """
    archive_list = [Path(a) for a in archives]
    missing = [str(a) for a in archive_list if not a.is_file()]
    if missing:
        raise ConfigurationError(
            "Archives not found: " + ", ".join(missing),
            code="missing_archives",
        )
    if base == Family.CUSTOM:
        raise ConfigurationError(
            "The base family must be a regular family",
            code="invalid_scope",
        )

    ctx = _start(settings)
    build_custom(ctx, base, archive_list, builder)
    _log_summary(ctx)
    return ctx


def _log_summary(ctx: RunContext) -> None:
    logger.info(
        "Run finished: %d built, %d skipped, %d failed, %d failed download(s)",
        len(ctx.succeeded),
        len(ctx.skipped),
        len(ctx.failed),
        len(ctx.failed_fetches),
    )


def render_failure_report(ctx: RunContext) -> str:
    """Render the cumulative failure report.

    Returns:
        One labelled block per failed target followed by one line per failed
        download; an empty string when nothing failed.
    """
    blocks: list[str] = []
    for outcome in ctx.failed:
        excerpt = outcome.log_excerpt.rstrip("\n")
        blocks.append(f"=== FAILED: {outcome.label} ===\n{excerpt}")

    fetch_lines = [
        f"FETCH FAILED: {f.family.value} {f.url}: {f.error}"
        for f in ctx.failed_fetches
    ]
    if fetch_lines:
        blocks.append("\n".join(fetch_lines))
    return "\n\n".join(blocks)


__all__ = [
    "TARGET_ERRORS",
    "RunContext",
    "build_custom",
    "build_family",
    "build_package_sets",
    "build_target",
    "family_urls",
    "process_package_set",
    "render_failure_report",
    "run",
    "run_custom",
]
