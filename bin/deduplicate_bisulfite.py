#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "pysam",
# ]
# ///

from __future__ import annotations

import argparse
import gzip
import itertools
import re
import sys
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, replace
from enum import Enum, auto
from operator import attrgetter
from pathlib import Path
from typing import TYPE_CHECKING, NamedTuple, TextIO

import pysam
from loguru import logger

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator, Sequence

# ------------------------------- CONSTANTS -------------------------------- #

# SAM header lines start with '@' and a two-letter record type
HEADER_LINE = re.compile(r"@[A-Za-z][A-Za-z0-9](\t|$)")
REFERENCE_HEADER = "@SQ\t"

# Legacy tabular output opens with a version banner
VANILLA_BANNER = "Bismark version"

# Fast path for the common all-match CIGAR, e.g. '76M'
SINGLE_MATCH_CIGAR = re.compile(r"(\d+)M")

SAM_MANDATORY_FIELDS = 11
SAM_METH_CALL_COLUMN = 13
FLAG_REVERSE = 0x10

# Emit a progress debug line after processing this many records or fragments
DEBUG_EVERY: int = 100_000


# -------------------------------- ERRORS ----------------------------------- #


class DedupError(Exception):
    """Base class for every fatal condition raised while deduplicating a file."""


class MalformedCigarError(DedupError):
    """CIGAR lengths and operations disagree, or an operation is unsupported."""


class AmbiguousConversionTagsError(DedupError):
    """XR/XG tags are missing, duplicated, or not one of the four known pairs."""


class MissingBarcodeError(DedupError):
    """Barcode mode is active but the read identifier carries no barcode."""


class UnresolvedModeError(DedupError):
    """Neither single-end nor paired-end layout could be established."""


class MalformedRecordError(DedupError):
    """A record line is structurally unusable (too few columns, bad numbers...)."""


class UpstreamIOError(DedupError):
    """Input or output stream could not be opened, read or written."""


def _fail(exc_type: type[DedupError], msg: str) -> DedupError:
    logger.error(msg)
    return exc_type(msg)


# ------------------------------- DATA TYPES -------------------------------- #


class Layout(Enum):
    """Sequencing layout of an input file."""

    SINGLE = auto()
    PAIRED = auto()


class RecordFormat(Enum):
    """Line format of the record stream."""

    SAM = auto()
    VANILLA = auto()  # legacy tab-delimited Bismark output


class SelectionMode(Enum):
    """Which record survives among those sharing a footprint."""

    DEFAULT = auto()  # first seen wins
    BARCODE = auto()  # first seen wins, per barcode
    REPRESENTATIVE = auto()  # most frequent methylation call wins


@dataclass(frozen=True)
class DedupConfig:
    """Per-file processing configuration."""

    layout: Layout | None = None
    record_format: RecordFormat = RecordFormat.SAM
    mode: SelectionMode = SelectionMode.DEFAULT

    def require_layout(self) -> Layout:
        """Return the layout, or fail if it was never resolved."""
        if self.layout is None:
            msg = (
                "Could not determine whether the input is single-end or paired-end; "
                "pass --single or --paired explicitly"
            )
            raise _fail(UnresolvedModeError, msg)
        return self.layout


class Strand(str, Enum):
    """Genomic strand symbol as used in footprint keys."""

    FORWARD = "+"
    REVERSE = "-"

    @staticmethod
    def from_flag(flag: int) -> Strand:
        return Strand.REVERSE if flag & FLAG_REVERSE else Strand.FORWARD

    @staticmethod
    def from_symbol(symbol: str, raw: str) -> Strand:
        try:
            return Strand(symbol)
        except ValueError:
            msg = f"Unknown strand symbol {symbol!r} in line: {raw.rstrip()}"
            raise _fail(MalformedRecordError, msg) from None


# ---------------------------- CIGAR UTILITIES ------------------------------ #


class CigarKind(Enum):
    """The CIGAR operations that can occur in bisulfite alignments."""

    MATCH = "M"
    INSERTION = "I"
    DELETION = "D"

    @property
    def consumes_reference(self) -> bool:
        return self is not CigarKind.INSERTION


class CigarOp(NamedTuple):
    """One CIGAR run: (operation kind, run length)."""

    kind: CigarKind
    length: int


class Cigar(tuple[CigarOp, ...]):
    """An immutable sequence of CigarOp parsed from CIGAR text."""

    @classmethod
    def parse(cls, text: str) -> Cigar:
        """
        Parse CIGAR text such as '76M', '10M2I64M' or '30M1D45M'.

        The list of run lengths and the list of operation letters are split
        independently and must line up one-to-one; anything else, and any
        operation other than M/I/D, raises MalformedCigarError.
        """
        single = SINGLE_MATCH_CIGAR.fullmatch(text)
        if single:
            return cls((CigarOp(CigarKind.MATCH, int(single.group(1))),))

        lengths = re.split(r"\D+", text)
        kinds = re.split(r"\d+", text)
        if lengths and lengths[-1] == "":
            lengths.pop()
        if kinds and kinds[0] == "":
            kinds = kinds[1:]

        if not lengths or not all(length.isdigit() for length in lengths):
            msg = f"Malformed CIGAR {text!r}: run lengths must be non-empty digit runs"
            raise _fail(MalformedCigarError, msg)
        if len(lengths) != len(kinds):
            msg = (
                f"Malformed CIGAR {text!r}: {len(lengths)} lengths do not match "
                f"{len(kinds)} operations"
            )
            raise _fail(MalformedCigarError, msg)

        ops = []
        for length, kind in zip(lengths, kinds):
            try:
                op_kind = CigarKind(kind)
            except ValueError:
                msg = (
                    f"Unsupported CIGAR operation {kind!r} in {text!r}; "
                    "only M, I and D are allowed"
                )
                raise _fail(MalformedCigarError, msg) from None
            ops.append(CigarOp(op_kind, int(length)))
        return cls(ops)

    def reference_span(self) -> int:
        """Reference bases covered: M and D advance, I does not."""
        if len(self) == 1 and self[0].kind is CigarKind.MATCH:
            return self[0].length
        return sum(run.length for run in self if run.kind.consumes_reference)

    def __str__(self) -> str:
        return "".join(f"{run.length}{run.kind.value}" for run in self)


# --------------------------- COORDINATE RESOLVER --------------------------- #


def resolve_end(start: int, cigar: Cigar) -> int:
    """Inclusive 1-based end coordinate of an alignment starting at `start`."""
    return start - 1 + cigar.reference_span()


def adjusted_start(start: int, strand: Strand, cigar: Cigar) -> int:
    """
    Strand-adjusted start of a single-end read. Reverse reads are anchored at
    their rightmost aligned base; forward reads keep their start.
    """
    if strand is Strand.REVERSE:
        return resolve_end(start, cigar)
    return start


# ------------------------------ TAG TOKENIZER ------------------------------ #


class TagTable:
    """Optional SAM fields (TAG:TYPE:VALUE) indexed by tag name."""

    def __init__(self, entries: dict[str, list[str]] | None = None) -> None:
        self._entries: dict[str, list[str]] = entries or {}

    @classmethod
    def from_fields(cls, fields: Iterable[str]) -> TagTable:
        entries: dict[str, list[str]] = {}
        for field in fields:
            parts = field.split(":", 2)
            if len(parts) != 3 or len(parts[0]) != 2 or len(parts[1]) != 1:  # noqa: PLR2004
                logger.trace(f"Ignoring non-tag optional field {field!r}")
                continue
            tag, _type, value = parts
            entries.setdefault(tag, []).append(value)
        return cls(entries)

    def values(self, tag: str) -> list[str]:
        """Every value recorded for `tag`, in field order."""
        return list(self._entries.get(tag, ()))

    def get(self, tag: str) -> str | None:
        """First value of `tag`, or None when absent."""
        found = self._entries.get(tag)
        return found[0] if found else None


# ----------------------------- RECORD MODEL -------------------------------- #


@dataclass(frozen=True)
class AlignmentRecord:
    """
    One parsed record line. `raw` is kept verbatim for output.

    SAM records carry a CIGAR and tag table; legacy records carry an explicit
    end column instead.
    """

    raw: str
    read_id: str
    strand: Strand
    chrom: str
    start: int
    cigar: Cigar | None = None
    end: int | None = None
    meth_call: str | None = None
    tags: TagTable | None = None

    @classmethod
    def from_sam(cls, line: str) -> AlignmentRecord:
        fields = line.rstrip("\r\n").split("\t")
        if len(fields) < SAM_MANDATORY_FIELDS:
            msg = (
                f"SAM record has {len(fields)} columns, expected at least "
                f"{SAM_MANDATORY_FIELDS}: {line.rstrip()}"
            )
            raise _fail(MalformedRecordError, msg)
        try:
            flag = int(fields[1])
            start = int(fields[3])
        except ValueError:
            msg = f"Non-integer FLAG or POS in SAM record: {line.rstrip()}"
            raise _fail(MalformedRecordError, msg) from None

        tags = TagTable.from_fields(fields[SAM_MANDATORY_FIELDS:])
        meth_call = tags.get("XM")
        if meth_call is None and len(fields) > SAM_METH_CALL_COLUMN:
            meth_call = fields[SAM_METH_CALL_COLUMN]

        return cls(
            raw=line,
            read_id=fields[0],
            strand=Strand.from_flag(flag),
            chrom=fields[2],
            start=start,
            cigar=Cigar.parse(fields[5]),
            meth_call=meth_call,
            tags=tags,
        )

    @classmethod
    def from_vanilla(cls, line: str, layout: Layout) -> AlignmentRecord:
        """
        Legacy single-end lines: id, strand, chrom, start, end, seq, meth, ...
        Legacy paired-end lines: id, strand, chrom, start, end, seq1, meth1,
        seq2, meth2, ...
        """
        fields = line.rstrip("\r\n").split("\t")
        needed = 9 if layout is Layout.PAIRED else 7
        if len(fields) < needed:
            msg = (
                f"Legacy {layout.name.lower()}-end record has {len(fields)} columns, "
                f"expected at least {needed}: {line.rstrip()}"
            )
            raise _fail(MalformedRecordError, msg)
        try:
            start = int(fields[3])
            end = int(fields[4])
        except ValueError:
            msg = f"Non-integer start or end in legacy record: {line.rstrip()}"
            raise _fail(MalformedRecordError, msg) from None

        meth_call = fields[6] + fields[8] if layout is Layout.PAIRED else fields[6]
        return cls(
            raw=line,
            read_id=fields[0],
            strand=Strand.from_symbol(fields[1], line),
            chrom=fields[2],
            start=start,
            end=end,
            meth_call=meth_call,
        )

    @property
    def lines(self) -> tuple[str, ...]:
        return (self.raw,)


class Fragment(NamedTuple):
    """Two consecutive SAM mate records, always kept together."""

    first: AlignmentRecord
    second: AlignmentRecord

    @property
    def lines(self) -> tuple[str, ...]:
        return (self.first.raw, self.second.raw)


Unit = AlignmentRecord | Fragment


# ------------------------- CONVERSION CLASSIFIER --------------------------- #

# (read conversion, genome conversion) -> (strand, forward orientation)
CONVERSION_STRANDS: dict[tuple[str, str], tuple[Strand, bool]] = {
    ("CT", "CT"): (Strand.FORWARD, True),
    ("GA", "CT"): (Strand.REVERSE, False),
    ("GA", "GA"): (Strand.FORWARD, True),
    ("CT", "GA"): (Strand.REVERSE, False),
}


def classify_conversion(read_conv: str, genome_conv: str) -> tuple[Strand, bool]:
    """Map an XR/XG pair to (strand, forward orientation)."""
    try:
        return CONVERSION_STRANDS[(read_conv, genome_conv)]
    except KeyError:
        msg = (
            f"Unrecognised conversion pair XR:{read_conv!r} XG:{genome_conv!r}; "
            "expected CT/CT, GA/CT, GA/GA or CT/GA"
        )
        raise _fail(AmbiguousConversionTagsError, msg) from None


def conversion_tags(record: AlignmentRecord) -> tuple[str, str]:
    """Extract exactly one XR and one XG value from a SAM record."""
    tags = record.tags or TagTable()
    read_conv = tags.values("XR")
    genome_conv = tags.values("XG")
    if len(read_conv) != 1 or len(genome_conv) != 1:
        msg = (
            f"Expected exactly one XR and one XG tag, found {len(read_conv)} XR and "
            f"{len(genome_conv)} XG in line: {record.raw.rstrip()}"
        )
        raise _fail(AmbiguousConversionTagsError, msg)
    return read_conv[0], genome_conv[0]


def fragment_span(fragment: Fragment) -> tuple[Strand, int, int]:
    """
    Strand, start and end of a paired-end fragment.

    Forward-orientation fragments start at mate 1 and end at the resolved end
    of mate 2; reverse-orientation fragments start at mate 2's raw start and
    end at the resolved end of mate 1.
    """
    first, second = fragment
    read_conv, genome_conv = conversion_tags(first)
    try:
        strand, forward = classify_conversion(read_conv, genome_conv)
    except AmbiguousConversionTagsError as err:
        raise AmbiguousConversionTagsError(f"{err} in line: {first.raw.rstrip()}") from err
    assert first.cigar is not None and second.cigar is not None  # noqa: PT018
    if forward:
        return strand, first.start, resolve_end(second.start, second.cigar)
    return strand, second.start, resolve_end(first.start, first.cigar)


# -------------------------- FOOTPRINT KEY BUILDER -------------------------- #


class FootprintKey(NamedTuple):
    """
    Structured duplicate key. Fields compare individually, so delimiters
    inside chromosome names or barcodes cannot make two keys collide.
    """

    strand: Strand
    chrom: str
    start: int
    end: int | None = None
    barcode: str | None = None


def extract_barcode(read_id: str) -> str:
    """Return the trailing ':'-delimited segment of a read identifier."""
    _head, sep, barcode = read_id.rpartition(":")
    if not sep or not barcode:
        msg = f"Failed to extract a barcode from read identifier {read_id!r}"
        raise _fail(MissingBarcodeError, msg)
    return barcode


def default_key(unit: Unit, config: DedupConfig) -> FootprintKey:
    """Position key used by the first-wins policies."""
    if isinstance(unit, Fragment):
        strand, start, end = fragment_span(unit)
        return FootprintKey(strand, unit.first.chrom, start, end)

    if config.record_format is RecordFormat.VANILLA:
        assert unit.end is not None
        if config.layout is Layout.PAIRED:
            return FootprintKey(unit.strand, unit.chrom, unit.start, unit.end)
        anchor = unit.start if unit.strand is Strand.FORWARD else unit.end
        return FootprintKey(unit.strand, unit.chrom, anchor)

    assert unit.cigar is not None
    return FootprintKey(
        unit.strand, unit.chrom, adjusted_start(unit.start, unit.strand, unit.cigar)
    )


def barcoded_key(unit: Unit, config: DedupConfig) -> FootprintKey:
    """Position key qualified by the barcode of the (first) read."""
    read_id = unit.first.read_id if isinstance(unit, Fragment) else unit.read_id
    return default_key(unit, config)._replace(barcode=extract_barcode(read_id))


def position_key(unit: Unit, config: DedupConfig) -> FootprintKey:
    """Start-and-end grouping key used by the representative policy."""
    if isinstance(unit, Fragment):
        strand, start, end = fragment_span(unit)
        return FootprintKey(strand, unit.first.chrom, start, end)
    if config.record_format is RecordFormat.VANILLA:
        return FootprintKey(unit.strand, unit.chrom, unit.start, unit.end)
    assert unit.cigar is not None
    return FootprintKey(unit.strand, unit.chrom, unit.start, resolve_end(unit.start, unit.cigar))


def methylation_call(unit: Unit) -> str:
    """Methylation call string; mates are concatenated for fragments."""
    records = unit if isinstance(unit, Fragment) else (unit,)
    calls = []
    for record in records:
        if record.meth_call is None:
            msg = f"No methylation call string (XM tag) in line: {record.raw.rstrip()}"
            raise _fail(MalformedRecordError, msg)
        calls.append(record.meth_call)
    return "".join(calls)


# ------------------------------- DEDUP STORE ------------------------------- #


@dataclass
class DedupStats:
    """Counters for one input file."""

    analysed: int = 0
    removed: int = 0
    duplicated_positions: int = 0

    @property
    def retained(self) -> int:
        return self.analysed - self.removed

    def percent(self, count: int) -> float:
        return 100.0 * count / self.analysed if self.analysed else 0.0


class DedupStore:
    """
    Occurrence counts per footprint key. Only the first unit admitted for a
    key is retained; the rest are counted as removed.
    """

    def __init__(self) -> None:
        self._occurrences: dict[FootprintKey, int] = {}
        self.duplicated_positions = 0

    def admit(self, key: FootprintKey) -> bool:
        """Count one unit at `key`; return whether it is the first (retained) one."""
        seen = self._occurrences.get(key, 0)
        self._occurrences[key] = seen + 1
        if not seen:
            return True
        if seen == 1:
            self.duplicated_positions += 1
        return False


# ---------------------------- SELECTION POLICIES --------------------------- #


class SelectionPolicy(ABC):
    """
    Decides which records survive. Streaming policies answer immediately in
    `consider`; deferred policies return False there and yield survivors
    from `drain` once the whole file has been seen.
    """

    def __init__(self, config: DedupConfig) -> None:
        self.config = config
        self.stats = DedupStats()

    @abstractmethod
    def consider(self, unit: Unit) -> bool: ...

    def drain(self) -> Iterator[Unit]:
        return iter(())


class FirstWinsPolicy(SelectionPolicy):
    """Keep the first record seen for each footprint."""

    def __init__(self, config: DedupConfig) -> None:
        super().__init__(config)
        self.store = DedupStore()

    def footprint(self, unit: Unit) -> FootprintKey:
        return default_key(unit, self.config)

    def consider(self, unit: Unit) -> bool:
        key = self.footprint(unit)
        self.stats.analysed += 1
        if self.store.admit(key):
            return True
        self.stats.removed += 1
        self.stats.duplicated_positions = self.store.duplicated_positions
        logger.trace(f"Duplicate at {key}")
        return False


class BarcodedFirstWinsPolicy(FirstWinsPolicy):
    """Keep the first record seen for each (footprint, barcode)."""

    def footprint(self, unit: Unit) -> FootprintKey:
        return barcoded_key(unit, self.config)


@dataclass
class CallTally:
    exemplar: Unit
    count: int = 1


class RepresentativePolicy(SelectionPolicy):
    """
    Keep, per footprint, one record carrying the most frequent methylation
    call string. Ties go to the call string seen first in the file.
    """

    def __init__(self, config: DedupConfig) -> None:
        super().__init__(config)
        self.calls: dict[FootprintKey, dict[str, CallTally]] = {}

    def consider(self, unit: Unit) -> bool:
        key = position_key(unit, self.config)
        call = methylation_call(unit)
        self.stats.analysed += 1
        tallies = self.calls.setdefault(key, {})
        tally = tallies.get(call)
        if tally is None:
            tallies[call] = CallTally(unit)
        else:
            tally.count += 1
        return False

    def drain(self) -> Iterator[Unit]:
        for key, tallies in self.calls.items():
            # max() keeps the earliest of equal counts; dicts keep insertion order
            winner = max(tallies.values(), key=attrgetter("count"))
            total = sum(tally.count for tally in tallies.values())
            if total > 1:
                self.stats.removed += total - 1
                self.stats.duplicated_positions += 1
                logger.trace(
                    f"Representative at {key}: {winner.count}/{total} share its call"
                )
            yield winner.exemplar


def make_policy(config: DedupConfig) -> SelectionPolicy:
    match config.mode:
        case SelectionMode.DEFAULT:
            return FirstWinsPolicy(config)
        case SelectionMode.BARCODE:
            return BarcodedFirstWinsPolicy(config)
        case SelectionMode.REPRESENTATIVE:
            return RepresentativePolicy(config)


# ------------------------------ CORE LOGIC --------------------------------- #


def _ensure_newline(line: str) -> str:
    return line if line.endswith("\n") else f"{line}\n"


def iter_units(
    lines: Iterable[str],
    config: DedupConfig,
    outp: TextIO | LineWriter,
) -> Iterator[Unit]:
    """
    Parse `lines` into records (single-end) or fragments (paired-end).
    Header lines are written straight to `outp` and never yielded.
    """
    layout: Layout | None = None
    pending: AlignmentRecord | None = None
    first_line = True

    for line in lines:
        if config.record_format is RecordFormat.SAM and HEADER_LINE.match(line):
            outp.write(_ensure_newline(line))
            continue
        if (
            first_line
            and config.record_format is RecordFormat.VANILLA
            and line.startswith(VANILLA_BANNER)
        ):
            outp.write(_ensure_newline(line))
            first_line = False
            continue
        first_line = False
        if not line.strip():
            continue

        if layout is None:
            layout = config.require_layout()

        if config.record_format is RecordFormat.VANILLA:
            yield AlignmentRecord.from_vanilla(line, layout)
            continue

        record = AlignmentRecord.from_sam(line)
        if layout is Layout.SINGLE:
            yield record
        elif pending is None:
            pending = record
        else:
            yield Fragment(pending, record)
            pending = None

    if pending is not None:
        msg = f"Paired-end input ended on an unpaired mate: {pending.raw.rstrip()}"
        raise _fail(MalformedRecordError, msg)


def process_stream(
    lines: Iterable[str],
    outp: TextIO | LineWriter,
    config: DedupConfig,
) -> DedupStats:
    """
    Stream `lines` through the configured selection policy, writing header
    lines and retained records to `outp` verbatim.

    First-wins policies write survivors in input order as they are seen; the
    representative policy writes them after the whole stream has been read.

    Returns:
        DedupStats with analysed/removed/duplicated-position counts.
    """
    policy = make_policy(config)
    logger.debug(f"Deduplicating with {type(policy).__name__} and {config}")

    for seen, unit in enumerate(iter_units(lines, config, outp), start=1):
        if policy.consider(unit):
            for raw in unit.lines:
                outp.write(_ensure_newline(raw))
        if seen % DEBUG_EVERY == 0:
            logger.debug(
                f"Progress: analysed={policy.stats.analysed}, removed={policy.stats.removed}"
            )

    for unit in policy.drain():
        for raw in unit.lines:
            outp.write(_ensure_newline(raw))

    stats = policy.stats
    assert stats.retained + stats.removed == stats.analysed, (
        f"Counter mismatch: retained={stats.retained} removed={stats.removed} "
        f"analysed={stats.analysed}"
    )
    assert 0 <= stats.removed <= stats.analysed, f"Invalid removed count: {stats}"

    logger.info(
        f"Totals: analysed={stats.analysed}, removed={stats.removed}, "
        f"positions={stats.duplicated_positions}, retained={stats.retained}"
    )
    return stats


# ----------------------------- I/O UTILITIES ------------------------------- #


class LineWriter(ABC):
    """Sink for SAM-formatted (or legacy) text lines."""

    @abstractmethod
    def write(self, line: str) -> None: ...

    @abstractmethod
    def close(self) -> None: ...

    def abandon(self) -> None:
        """Release handles without finishing the output."""
        self.close()


class TextLineWriter(LineWriter):
    def __init__(self, path: Path) -> None:
        self.path = path
        self._fh = open(path, "w")  # noqa: SIM115

    def write(self, line: str) -> None:
        self._fh.write(line)

    def close(self) -> None:
        self._fh.close()


class BamLineWriter(LineWriter):
    """
    Collect header lines until the first record arrives, then stream SAM text
    records into a BAM file through pysam.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._header_lines: list[str] = []
        self._out: pysam.AlignmentFile | None = None

    def _open(self) -> pysam.AlignmentFile:
        logger.debug(f"Opening for write: {self.path} (mode=wb)")
        try:
            header = pysam.AlignmentHeader.from_text("".join(self._header_lines))
            return pysam.AlignmentFile(str(self.path), "wb", header=header)
        except ValueError as err:
            msg = f"Cannot build a BAM header for {self.path}: {err}"
            raise _fail(UpstreamIOError, msg) from err

    def write(self, line: str) -> None:
        if self._out is None and HEADER_LINE.match(line):
            self._header_lines.append(line)
            return
        if self._out is None:
            # BAM records carry reference ids, which need an @SQ dictionary
            if not any(h.startswith(REFERENCE_HEADER) for h in self._header_lines):
                msg = f"Cannot write BAM output {self.path}: input has no @SQ header lines"
                raise _fail(UpstreamIOError, msg)
            self._out = self._open()
        try:
            segment = pysam.AlignedSegment.fromstring(line.rstrip("\r\n"), self._out.header)
        except ValueError as err:
            msg = f"Cannot encode record for BAM output {self.path} ({err}): {line.rstrip()}"
            raise _fail(UpstreamIOError, msg) from err
        rname = line.split("\t", 3)[2] if line.count("\t") >= 2 else "*"
        if rname != "*" and segment.reference_id < 0:
            msg = f"Reference {rname!r} is not in the BAM header of {self.path}: {line.rstrip()}"
            raise _fail(UpstreamIOError, msg)
        self._out.write(segment)

    def close(self) -> None:
        if self._out is None:
            self._out = self._open()
        self._out.close()

    def abandon(self) -> None:
        if self._out is not None:
            self._out.close()


def open_output(path: Path, bam: bool) -> LineWriter:  # noqa: FBT001
    try:
        return BamLineWriter(path) if bam else TextLineWriter(path)
    except OSError as err:
        msg = f"Cannot open output {path}: {err}"
        raise _fail(UpstreamIOError, msg) from err


@contextmanager
def open_alignment_lines(path: str) -> Iterator[Iterator[str]]:
    """
    Yield the text lines of `path`: BAM is decoded through pysam (header
    text first), '.gz' is read as gzip text, anything else as plain text.
    """
    lower = path.lower()
    logger.debug(f"Opening for read: {path}")
    if lower.endswith(".bam"):
        try:
            bam = pysam.AlignmentFile(path, "rb")
        except (OSError, ValueError) as err:
            msg = f"Cannot open BAM input {path}: {err}"
            raise _fail(UpstreamIOError, msg) from err
        try:
            header_text = str(bam.header)
            yield itertools.chain(
                header_text.splitlines(keepends=True),
                (f"{read.to_string()}\n" for read in bam),
            )
        finally:
            bam.close()
        return

    try:
        fh = (
            gzip.open(path, "rt", encoding="utf-8")
            if lower.endswith(".gz")
            else open(path, encoding="utf-8")  # noqa: SIM115
        )
    except OSError as err:
        msg = f"Cannot open input {path}: {err}"
        raise _fail(UpstreamIOError, msg) from err
    with fh:
        yield iter(fh)


def split_header(lines: Iterator[str]) -> tuple[list[str], Iterator[str]]:
    """
    Read leading SAM header lines. Returns them along with an iterator that
    still yields the full stream (header included).
    """
    header: list[str] = []
    for line in lines:
        if HEADER_LINE.match(line):
            header.append(line)
            continue
        return header, itertools.chain(list(header), [line], lines)
    return header, iter(list(header))


def infer_layout(header: Sequence[str]) -> Layout:
    """Layout from the aligner's @PG command line: '-1 ... -2 ...' means paired."""
    for line in header:
        if line.startswith("@PG") and "ID:Bismark" in line:
            if "-1 " in line and "-2 " in line:
                logger.info("Treating file as paired-end data (from @PG header)")
                return Layout.PAIRED
            logger.info("Treating file as single-end data (from @PG header)")
            return Layout.SINGLE
    msg = (
        "No Bismark @PG header line found to infer single- or paired-end layout; "
        "pass --single or --paired explicitly"
    )
    raise _fail(UnresolvedModeError, msg)


def output_paths(
    in_path: str,
    bam: bool,  # noqa: FBT001
    record_format: RecordFormat,
    output_dir: str | None = None,
) -> tuple[Path, Path]:
    """Return (deduplicated output path, report path) for an input file."""
    source = Path(in_path)
    stem = source.name
    for suffix in (".gz", ".sam", ".bam", ".txt"):
        if stem.lower().endswith(suffix):
            stem = stem[: -len(suffix)]
    if record_format is RecordFormat.VANILLA:
        ext = "txt"
    else:
        ext = "bam" if bam else "sam"
    directory = Path(output_dir) if output_dir else source.parent
    return (
        directory / f"{stem}.deduplicated.{ext}",
        directory / f"{stem}.deduplication_report.txt",
    )


def format_report(in_name: str, stats: DedupStats) -> str:
    return (
        f"Total number of alignments analysed in {in_name}:\t{stats.analysed}\n"
        f"Total number duplicated alignments removed:\t{stats.removed} "
        f"({stats.percent(stats.removed):.2f}%)\n"
        f"Duplicated alignments were found at:\t{stats.duplicated_positions} "
        "different position(s)\n\n"
        f"Total count of deduplicated leftover sequences: {stats.retained} "
        f"({stats.percent(stats.retained):.2f}% of total)\n"
    )


def deduplicate_file(
    in_path: str,
    config: DedupConfig,
    bam: bool = False,  # noqa: FBT001, FBT002
    output_dir: str | None = None,
) -> DedupStats:
    """
    Deduplicate one input file and write its output and report. On any
    fatal error the partial output is removed and the error re-raised.
    """
    out_path, report_path = output_paths(in_path, bam, config.record_format, output_dir)
    with open_alignment_lines(in_path) as lines:
        writer: LineWriter | None = None
        try:
            if config.record_format is RecordFormat.SAM and config.layout is None:
                header, lines = split_header(lines)
                config = replace(config, layout=infer_layout(header))

            writer = open_output(out_path, bam)
            stats = process_stream(lines, writer, config)
            writer.close()
        except (DedupError, OSError, UnicodeDecodeError) as err:
            if writer is not None:
                writer.abandon()
            out_path.unlink(missing_ok=True)
            logger.critical(f"Aborted deduplication of {in_path}; no output written")
            if isinstance(err, UnicodeDecodeError):
                msg = f"{in_path} is not readable as text: {err}"
                raise _fail(UpstreamIOError, msg) from err
            if isinstance(err, OSError):
                msg = f"I/O failure while deduplicating {in_path}: {err}"
                raise _fail(UpstreamIOError, msg) from err
            raise

    report_path.write_text(format_report(Path(in_path).name, stats))
    logger.success(
        f"{in_path}: analysed {stats.analysed} | removed {stats.removed} "
        f"({stats.percent(stats.removed):.2f}%) at {stats.duplicated_positions} "
        f"position(s) | retained {stats.retained} -> {out_path}"
    )
    return stats


# ----------------------------- LOGGING SETUP ------------------------------- #


def configure_logging(verbose: int, quiet: int) -> None:
    """
    Base at SUCCESS (0). Positive → louder (more verbose), negative → quieter.
    Map:
      +3.. = TRACE
      +2   = DEBUG
      +1   = INFO
       0   = SUCCESS
      -1   = WARNING
      -2   = ERROR
      <=-3 = CRITICAL
    """
    logger.remove()
    delta = verbose - quiet
    match delta:
        case d if d >= 3:  # noqa: PLR2004
            level_str = "TRACE"
        case 2:
            level_str = "DEBUG"
        case 1:
            level_str = "INFO"
        case 0:
            level_str = "SUCCESS"
        case -1:
            level_str = "WARNING"
        case -2:
            level_str = "ERROR"
        case _:
            level_str = "CRITICAL"
    logger.add(sys.stderr, level=level_str)
    logger.debug(f"Logger configured at level: {level_str}")


# --------------------------------- CLI ------------------------------------- #


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description=(
            "Remove alignments that share a genomic footprint (PCR duplicates) from\n"
            "bisulfite alignment output. Single-end reads are compared by strand,\n"
            "chromosome and strand-aware start; paired-end fragments by strand,\n"
            "chromosome, start and end. Each file is processed independently."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    p.add_argument("files", nargs="+", help="Input SAM/BAM (or legacy text) files")

    layout = p.add_mutually_exclusive_group()
    layout.add_argument(
        "-s",
        "--single",
        action="store_true",
        help="Input is single-end (default: inferred from the @PG header)",
    )
    layout.add_argument(
        "-p",
        "--paired",
        action="store_true",
        help="Input is paired-end; mates must be on consecutive lines",
    )

    selection = p.add_mutually_exclusive_group()
    selection.add_argument(
        "--barcode",
        action="store_true",
        help="Also require the trailing ':<barcode>' of the read ID to match",
    )
    selection.add_argument(
        "--representative",
        action="store_true",
        help="Keep the most frequent methylation call per position instead of the first read",
    )

    p.add_argument(
        "--vanilla",
        action="store_true",
        help="Input is in the legacy tab-delimited format rather than SAM/BAM",
    )
    p.add_argument(
        "--bam",
        action="store_true",
        help="Write BAM output (default: same container as the input)",
    )
    p.add_argument(
        "--output-dir",
        default=None,
        help="Directory for output and report files (default: next to each input)",
    )

    # Verbosity: -v/-vv/-vvv or -q/-qq/-qqq (mutually exclusive)
    g = p.add_mutually_exclusive_group()
    g.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (use up to -vvv).",
    )
    g.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Decrease verbosity (use up to -qqq).",
    )

    return p


def main(argv: Sequence[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose, args.quiet)

    if args.vanilla and args.bam:
        parser.error("--bam cannot be combined with --vanilla")

    if args.single:
        layout = Layout.SINGLE
    elif args.paired:
        layout = Layout.PAIRED
    else:
        layout = None

    if args.barcode:
        mode = SelectionMode.BARCODE
    elif args.representative:
        mode = SelectionMode.REPRESENTATIVE
    else:
        mode = SelectionMode.DEFAULT

    config = DedupConfig(
        layout=layout,
        record_format=RecordFormat.VANILLA if args.vanilla else RecordFormat.SAM,
        mode=mode,
    )
    logger.debug(f"DedupConfig: {config}")

    for path in args.files:
        bam = args.bam or (not args.vanilla and path.lower().endswith(".bam"))
        try:
            deduplicate_file(path, config, bam=bam, output_dir=args.output_dir)
        except DedupError:
            sys.exit(1)

    logger.info("Deduplication run complete.")


if __name__ == "__main__":
    main()
