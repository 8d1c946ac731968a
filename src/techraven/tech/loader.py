"""
Technology File Loader

Reads technology files from ordered sources (base game, then mods) and
feeds them through extraction into a TechRegistry.

Parsing is a pure function of one file's text, so files are parsed on a
bounded thread pool. Ingestion is single-writer: results are ingested
serially in (load order, file name) order regardless of which parse
finished first. A stop request is honoured between files, never mid-file.
"""

import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from techraven.config import TechravenConfig, load_config
from techraven.diagnostics import Diagnostic, DiagnosticLog
from techraven.parser.lexer import read_source
from techraven.tech.builder import ExtractionResult, extract_records
from techraven.tech.policies import DEFAULT_POLICY, IngestPolicy
from techraven.tech.records import BASE_SOURCE_ID, BASE_SOURCE_NAME, Provenance, TechRecord
from techraven.tech.registry import TechRegistry

logger = logging.getLogger(__name__)

# Diagnostics that mean a file contributed nothing
FAILURE_CODES = frozenset({"FILE_READ_ERROR", "EXTRACTION_FAILED"})


class FileCache:
    """
    Extraction results keyed by (path, size, mtime) and provenance.

    Thread-safe; owned by one loader. Editing a file changes its size or
    mtime; storing the new result evicts the entry for the old version, so
    the cache holds at most one entry per (path, provenance).
    """

    def __init__(self):
        self._entries: Dict[Tuple[Any, ...], ExtractionResult] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def make_key(path: Union[str, Path], provenance: Provenance) -> Tuple[Any, ...]:
        stat = os.stat(path)
        return (str(path), stat.st_size, stat.st_mtime_ns, provenance)

    def get(self, key: Tuple[Any, ...]) -> Optional[ExtractionResult]:
        with self._lock:
            result = self._entries.get(key)
            if result is None:
                self.misses += 1
            else:
                self.hits += 1
            return result

    def put(self, key: Tuple[Any, ...], result: ExtractionResult) -> None:
        path, provenance = key[0], key[-1]
        with self._lock:
            stale = [k for k in self._entries if k[0] == path and k[-1] == provenance and k != key]
            for old in stale:
                del self._entries[old]
            self._entries[key] = result

    def invalidate(self, path: Optional[Union[str, Path]] = None) -> int:
        """Drop entries for one path, or everything. Returns entries dropped."""
        with self._lock:
            if path is None:
                dropped = len(self._entries)
                self._entries.clear()
                return dropped
            stale = [k for k in self._entries if k[0] == str(path)]
            for key in stale:
                del self._entries[key]
            return len(stale)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {"entries": len(self._entries), "hits": self.hits, "misses": self.misses}

    def __len__(self) -> int:
        return len(self._entries)


@dataclass
class TechSource:
    """
    One data layer: the base game or a mod.

    Either ``root`` (a game or mod folder; files are found under the
    configured tech subdirectory) or an explicit ``files`` list.
    """
    source_id: str = BASE_SOURCE_ID
    name: str = BASE_SOURCE_NAME
    load_order: int = 0
    root: Optional[Path] = None
    files: List[Path] = field(default_factory=list)
    policy: IngestPolicy = DEFAULT_POLICY

    def provenance(self, path: Union[str, Path]) -> Provenance:
        return Provenance(
            source_file=str(path),
            source_id=self.source_id,
            source_name=self.name,
            load_order=self.load_order,
        )


@dataclass
class LoadReport:
    """Partial-success summary of a batch load."""
    files_total: int = 0
    files_parsed: int = 0
    files_failed: int = 0
    records_extracted: int = 0
    records_ingested: int = 0
    records_new: int = 0
    records_overridden: int = 0
    records_rejected: int = 0
    per_source: Dict[str, int] = field(default_factory=dict)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    cache: Dict[str, int] = field(default_factory=dict)
    stopped: bool = False

    @property
    def errors(self) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.severity == "error"]

    @property
    def warnings(self) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.severity == "warning"]

    def summary(self) -> str:
        state = "stopped" if self.stopped else "done"
        return (f"{state}: {self.files_parsed}/{self.files_total} files, "
                f"{self.records_ingested} records ({self.records_new} new, "
                f"{self.records_overridden} overridden, {self.records_rejected} rejected), "
                f"{len(self.errors)} errors, {len(self.warnings)} warnings")


class TechLoader:
    """
    Loads technology files into a registry.

    Usage:
        loader = TechLoader(config, registry)
        report = loader.load_sources([
            TechSource(root=game_dir),
            TechSource("my_mod", "My Mod", load_order=1, root=mod_dir),
        ])
    """

    def __init__(
        self,
        config: Optional[TechravenConfig] = None,
        registry: Optional[TechRegistry] = None,
        cache: Optional[FileCache] = None,
        global_variables: Optional[Dict[str, Any]] = None,
    ):
        self.config = config or load_config()
        self.registry = registry if registry is not None else TechRegistry(self.config.default_areas)
        self.cache = cache if cache is not None else FileCache()
        self.global_variables = dict(global_variables or {})
        self.diagnostics = DiagnosticLog()

    # ------------------------------------------------------------ extraction

    def extract_file(self, path: Union[str, Path], provenance: Provenance) -> ExtractionResult:
        """Read and extract one file. Never raises; I/O problems become FILE_READ_ERROR."""
        try:
            key = FileCache.make_key(path, provenance)
            size = key[1]
        except OSError as e:
            return self._read_failure(path, f"Cannot stat file: {e}")

        if size > self.config.max_file_size:
            return self._read_failure(
                path, f"File is {size} bytes, over the {self.config.max_file_size} byte limit; skipped",
                severity="warning",
            )

        cached = self.cache.get(key)
        if cached is not None:
            return cached

        try:
            text = read_source(str(path), tuple(self.config.encodings))
        except (OSError, UnicodeDecodeError) as e:
            return self._read_failure(path, f"Cannot read file: {e}")

        try:
            result = extract_records(
                text,
                provenance,
                global_variables=self.global_variables,
                max_errors=self.config.max_parse_errors,
            )
        except Exception as e:
            # Crash-proof: one bad file never ends the batch
            logger.exception("Extraction failed for %s", path)
            return self._read_failure(path, f"{type(e).__name__}: {e}", code="EXTRACTION_FAILED")
        self.cache.put(key, result)
        return result

    def _read_failure(self, path, message: str, severity: str = "error", code: str = "FILE_READ_ERROR") -> ExtractionResult:
        diagnostic = Diagnostic(severity=severity, code=code, message=message, file=str(path))
        logger.warning("%s", diagnostic)
        return ExtractionResult(diagnostics=[diagnostic])

    # ------------------------------------------------------------- ingestion

    def _ingest_result(self, result: ExtractionResult, policy: IngestPolicy, report: Optional[LoadReport] = None) -> List[TechRecord]:
        ingested = []
        before = len(self.registry.diagnostics)
        for record in result.records:
            is_new = record.id not in self.registry
            if self.registry.ingest(record, policy):
                ingested.append(record)
                if report is not None:
                    if is_new:
                        report.records_new += 1
                    else:
                        report.records_overridden += 1
            elif report is not None:
                report.records_rejected += 1
        new_diagnostics = list(self.registry.diagnostics)[before:]
        self.diagnostics.extend(result.diagnostics)
        self.diagnostics.extend(new_diagnostics)
        if report is not None:
            report.records_extracted += len(result.records)
            report.records_ingested += len(ingested)
            report.diagnostics.extend(result.diagnostics)
            report.diagnostics.extend(new_diagnostics)
        return ingested

    def ingest_text(
        self,
        text: str,
        provenance: Optional[Provenance] = None,
        policy: IngestPolicy = DEFAULT_POLICY,
    ) -> List[TechRecord]:
        """Extract records from text and ingest them. Returns the records that were ingested."""
        result = extract_records(
            text,
            provenance or Provenance(),
            global_variables=self.global_variables,
            max_errors=self.config.max_parse_errors,
        )
        return self._ingest_result(result, policy)

    def ingest_file(
        self,
        path: Union[str, Path],
        source_id: str = BASE_SOURCE_ID,
        load_order: int = 0,
        source_name: Optional[str] = None,
        policy: IngestPolicy = DEFAULT_POLICY,
    ) -> int:
        """Extract and ingest one file. Returns the number of records ingested."""
        if source_name is None:
            source_name = BASE_SOURCE_NAME if source_id == BASE_SOURCE_ID else source_id
        provenance = Provenance(str(path), source_id, source_name, load_order)
        result = self.extract_file(path, provenance)
        return len(self._ingest_result(result, policy))

    # ------------------------------------------------------------ batch load

    def discover(self, source: TechSource) -> List[Path]:
        """Files of one source, sorted by name."""
        files = [Path(f) for f in source.files]
        if source.root is not None:
            tech_dir = Path(source.root) / self.config.tech_subdir
            if tech_dir.is_dir():
                files.extend(p for p in tech_dir.glob(self.config.file_glob) if p.is_file())
            else:
                logger.debug("No technology folder in %s", source.root)
        return sorted(set(files), key=lambda p: (p.name, str(p)))

    def load_sources(
        self,
        sources: Sequence[TechSource],
        stop_event: Optional[threading.Event] = None,
    ) -> LoadReport:
        """
        Load every source into the registry.

        Sources are applied in ascending load order (ties keep their given
        order), files within a source alphabetically.

        Args:
            sources: Base game and mods, any order
            stop_event: When set, loading stops before the next file

        Returns:
            LoadReport with counts, diagnostics and cache statistics
        """
        report = LoadReport()
        plan: List[Tuple[Path, TechSource]] = []
        for source in sorted(sources, key=lambda s: s.load_order):
            for path in self.discover(source):
                plan.append((path, source))
        report.files_total = len(plan)

        logger.info("Loading %d technology files from %d sources with %d workers",
                    len(plan), len(sources), self.config.workers)

        with ThreadPoolExecutor(max_workers=self.config.workers) as executor:
            futures = [
                executor.submit(self.extract_file, path, source.provenance(path))
                for path, source in plan
            ]

            for (path, source), future in zip(plan, futures):
                if stop_event is not None and stop_event.is_set():
                    report.stopped = True
                    for pending in futures:
                        pending.cancel()
                    logger.info("Load stopped before %s", path)
                    break

                result = future.result()
                if any(d.code in FAILURE_CODES for d in result.diagnostics):
                    report.files_failed += 1
                else:
                    report.files_parsed += 1
                ingested = self._ingest_result(result, source.policy, report)
                report.per_source[source.source_id] = report.per_source.get(source.source_id, 0) + len(ingested)

        report.cache = self.cache.stats()
        logger.info("Technology load %s", report.summary())
        return report
