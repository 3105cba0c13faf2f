"""Build orchestrator.

Runs the backend a descriptor selects against a private working copy of the
fetched source, installs into ``output_dir``, then checks that every declared
module entrypoint was produced. A step that exits non-zero surfaces as
``ProcessFailed``; a build whose steps all succeeded but left a declared
entrypoint out surfaces as ``ArtifactMissing``.
"""
from __future__ import annotations

import logging
import os
import tempfile
from typing import Dict, List, Optional

from constants import Constants
from common.fs_utils import copy_tree, remove_tree
from common.logging_utils import extra_context, is_debug_enabled, Timer
from descriptor.models import Descriptor
from errors import ArtifactMissing, BuildError
from fetch import FetchedSource

from .backends import HANDLERS, BuildContext, apply_install_table, module_path
from .models import BuildArtifact, BuildConfig
from .process import CancelToken, excerpt

logger = logging.getLogger(__name__)


def _locate_module(output_dir: str, module: str, config: BuildConfig) -> Optional[str]:
    candidates = [
        os.path.join(Constants.LUA_DIR, module_path(module, ".lua")),
        os.path.join(Constants.LUA_DIR, module.replace(".", "/"), "init.lua"),
        os.path.join(Constants.LIB_DIR, module_path(module, config.shared_library_suffix)),
    ]
    for relative in candidates:
        if os.path.isfile(os.path.join(output_dir, relative)):
            return relative.replace(os.sep, "/")
    return None


def _check_entrypoints(ctx: BuildContext) -> Dict[str, str]:
    """Map each declared module to the file providing it."""
    found: Dict[str, str] = {}
    declared = list(ctx.descriptor.build.modules)
    for section in ("lua", "lib"):
        declared += [m for m in ctx.descriptor.build.install.get(section, {}) if m not in declared]
    for module in declared:
        relative = _locate_module(ctx.output_dir, module, ctx.config)
        if relative is None:
            expected = os.path.join(Constants.LUA_DIR, module_path(module, ".lua"))
            raise ArtifactMissing(ctx.backend.value, expected.replace(os.sep, "/"))
        found[module] = relative
    return found


def _collect_files(root: str) -> List[str]:
    files = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for filename in filenames:
            if filename == Constants.STORE_METADATA_FILE:
                continue
            files.append(os.path.relpath(os.path.join(dirpath, filename), root).replace(os.sep, "/"))
    return sorted(files)


def build(
    descriptor: Descriptor,
    fetched_source: FetchedSource,
    build_config: BuildConfig,
    output_dir: str,
    cancel: Optional[CancelToken] = None,
    timeout: Optional[float] = None,
) -> BuildArtifact:
    """Build ``descriptor`` from ``fetched_source`` into ``output_dir``.

    The fetched tree is never modified; steps run in a temporary copy that
    is discarded afterwards, whatever the outcome.

    Args:
        descriptor: Package descriptor selecting the backend.
        fetched_source: Output of the source fetcher.
        build_config: Target runtime/platform and variable overrides.
        output_dir: Install destination (created if missing).
        cancel: Optional token; running steps are terminated when it fires.
        timeout: Optional per-step timeout in seconds.

    Returns:
        BuildArtifact: Installed files and module entrypoints.

    Raises:
        ToolMissing, ProcessFailed, ArtifactMissing, BuildCancelled.
    """
    backend = descriptor.build.backend
    os.makedirs(output_dir, exist_ok=True)
    workdir = tempfile.mkdtemp(prefix=f"rockyard-build-{descriptor.name}-")
    ctx = BuildContext(descriptor, workdir, os.path.abspath(output_dir), build_config, cancel, timeout=timeout)
    logger.info("Building %s with %s backend", descriptor.package_id, backend.value)

    with Timer() as t:
        try:
            if os.path.isdir(fetched_source.local_path):
                copy_tree(fetched_source.local_path, workdir)
            HANDLERS[backend](ctx)
            apply_install_table(ctx)
            modules = _check_entrypoints(ctx)
        except BuildError as exc:
            logger.warning("Build of %s failed: %s", descriptor.package_id, exc)
            if is_debug_enabled(logger) and ctx.log:
                logger.debug("Build log for %s:\n%s", descriptor.package_id, excerpt(ctx.log))
            raise
        finally:
            remove_tree(workdir)

    artifact = BuildArtifact(
        root=ctx.output_dir,
        backend=backend,
        files=_collect_files(ctx.output_dir),
        modules=modules,
        log_excerpt=excerpt(ctx.log) if ctx.log else None,
    )
    if is_debug_enabled(logger):
        logger.debug(
            "Build finished",
            extra=extra_context(
                event="build",
                component="orchestrator",
                package=str(descriptor.package_id),
                backend=backend.value,
                outcome="success",
                duration_ms=t.duration_ms(),
                files=len(artifact.files),
            )
        )
    return artifact
