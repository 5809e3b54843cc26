"""Source compilers: one pure translator per backend kind."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

from reportquery.compilers.base import (
    BaseCompiler,
    CompilerWarning,
    NativeQuery,
    PostFetchPlan,
    SourceCompiler,
)
from reportquery.compilers.cloud_directory import CloudDirectoryCompiler
from reportquery.compilers.cloud_suite import CloudSuiteCompiler
from reportquery.compilers.directory import DirectoryCompiler
from reportquery.sources import SourceKind


def build_compilers(
    *,
    clock: Callable[[], datetime] | None = None,
    report_period: str = "D30",
) -> dict[SourceKind, SourceCompiler]:
    """
    Construct one compiler per source kind.

    Parameters
    ----------
    clock:
        Optional clock used to resolve relative date filters.
    report_period:
        Usage report period for the cloud suite compiler.

    Returns
    -------
    dict[SourceKind, SourceCompiler]
        Compilers keyed by source.
    """
    kwargs = {"clock": clock} if clock is not None else {}
    return {
        SourceKind.DIRECTORY: DirectoryCompiler(**kwargs),
        SourceKind.CLOUD_DIRECTORY: CloudDirectoryCompiler(**kwargs),
        SourceKind.CLOUD_SUITE: CloudSuiteCompiler(period=report_period, **kwargs),
    }


__all__ = [
    "BaseCompiler",
    "CloudDirectoryCompiler",
    "CloudSuiteCompiler",
    "CompilerWarning",
    "DirectoryCompiler",
    "NativeQuery",
    "PostFetchPlan",
    "SourceCompiler",
    "build_compilers",
]
