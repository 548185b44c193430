"""
Main opcode finder orchestrator.

Loads the configuration and the executable, processes every signature
and collects the results.
"""

import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import List, Optional

from . import config
from .correlator import Correlator
from .jumptable import ConfigurationError, reconstruct
from .loader import BinaryImage, load_image
from .output import ResultEntry, ResultMap, print_stats, write_results
from .signatures import FinderConfig, SignatureInfo, load_config
from .xrefs import XRefIndex


@dataclass
class SignatureReport:
    """Everything one signature produced, in the order it was produced."""
    signature: SignatureInfo
    entries: List[ResultEntry] = field(default_factory=list)
    table_size: int = 0
    elapsed: float = 0.0

    def fail_all(self, message: str, names=None) -> None:
        """Mark every (remaining) name of the signature as not found."""
        for name in (names if names is not None else self.signature.iter_names()):
            self.entries.append(ResultEntry.not_found(name, message))


class OpcodeFinder:
    """
    Top-level orchestrator.

    Usage:
        finder = OpcodeFinder.from_config("config.json")
        results = finder.run()
    """

    def __init__(self, image: BinaryImage, signatures: List[SignatureInfo],
                 verbose: bool = False):
        self.image = image
        self.signatures = signatures
        self.verbose = verbose

        self.xrefs = XRefIndex(image)
        self.correlator = Correlator(image, self.xrefs)

    @classmethod
    def from_config(cls, config_path: str = config.DEFAULT_CONFIG_FILENAME,
                    game_path: Optional[str] = None,
                    verbose: bool = False) -> "OpcodeFinder":
        """Load the configuration and the executable it names."""
        finder_config: FinderConfig = load_config(config_path)
        path = game_path or finder_config.game_path
        try:
            image = load_image(path)
        except FileNotFoundError:
            raise FileNotFoundError(
                f"Cannot find the executable. Your path from "
                f"{config_path}: {path}") from None

        if verbose:
            print(f"Loaded: {image.filepath} ({len(image):,d} bytes)")
            print(f"  Sections: {', '.join(s.name for s in image.sections) or 'none'}")
            print(f"  Signatures: {len(finder_config.signatures)}")

        return cls(image, finder_config.signatures, verbose=verbose)

    # ------------------------------------------------------------------

    def process(self, signature: SignatureInfo) -> SignatureReport:
        """Resolve one signature. Never raises for per-signature failures."""
        t_start = time.time()
        report = SignatureReport(signature)
        if signature.is_table_root:
            self._process_table(signature, report)
        else:
            self._process_plain(signature, report)
        report.elapsed = time.time() - t_start
        return report

    def _process_plain(self, signature: SignatureInfo,
                       report: SignatureReport) -> None:
        try:
            report.entries.extend(self.correlator.resolve_plain(signature))
        except (ValueError, LookupError) as e:
            report.fail_all(f"{signature.name}: {e}")

    def _process_table(self, signature: SignatureInfo,
                       report: SignatureReport) -> None:
        try:
            matches = self.image.find(signature.signature)
        except ValueError as e:
            report.fail_all(f"{signature.name}: {e}")
            return

        if not matches:
            report.fail_all(f"Signature for {signature.name} has no result. "
                            f"Please update the signature.")
            return
        if len(matches) > 1:
            report.fail_all(f"Signature for {signature.name} has more than 1 "
                            f"result. Please update the signature to make "
                            f"sure it is unique.")
            return

        try:
            table = reconstruct(self.image, matches[0], signature.function_size,
                                signature.jump_table_type, signature.name)
        except (ValueError, ConfigurationError) as e:
            report.fail_all(str(e))
            return
        report.table_size = len(table)

        children = signature.sub_info
        for i, child in enumerate(children):
            try:
                report.entries.extend(self.correlator.resolve_child(child, table))
            except ConfigurationError as e:
                report.fail_all(str(e), [c.name for c in children[i:]])
                return
            except (ValueError, LookupError) as e:
                report.entries.append(
                    ResultEntry.not_found(child.name, f"{child.name}: {e}"))

    # ------------------------------------------------------------------

    def run(self, jobs: int = 1) -> ResultMap:
        """
        Process every signature and collect the results.

        With ``jobs > 1`` signatures are processed on a thread pool; reports
        are still merged in configuration order.
        """
        t_start = time.time()

        if jobs > 1:
            with ThreadPoolExecutor(max_workers=jobs) as pool:
                reports = list(pool.map(self.process, self.signatures))
        else:
            reports = [self.process(s) for s in self.signatures]

        results = ResultMap()
        for report in reports:
            self._report(report)
            results.extend(report.entries)

        if self.verbose:
            print(f"\nProcessed {len(reports)} signatures in "
                  f"{time.time() - t_start:.2f}s")
        return results

    def _report(self, report: SignatureReport) -> None:
        signature = report.signature
        if signature.is_table_root:
            print(f"\n[-] Finding OpCodes from {signature.name}")
            if self.verbose and report.table_size:
                print(f"  Table entries: {report.table_size}")
        for entry in report.entries:
            print(entry.console_line())
        if self.verbose:
            print(f"  ({report.elapsed:.2f}s)")

    def trace(self, pattern: str, hops: int) -> List[int]:
        """
        Print the caller chain above the unique match of ``pattern``.

        Each line shows the address with the block offset added back
        (as a disassembler would show it) and the raw file offset.
        """
        matches = self.image.find(pattern)
        if not matches:
            print(f"[x] No result for {pattern}")
            return []

        chain = self.xrefs.trace_callers(matches[0], hops)
        if not chain:
            print(f"[x] No references found above 0x{matches[0]:X}")
        for i, address in enumerate(chain):
            print(f"{i}: 0x{address + config.BLOCK_SIZE:X} / 0x{address:X}")
        return chain

    def stats(self, results: ResultMap) -> None:
        print_stats(self.image, self.xrefs, results)

    @staticmethod
    def write(results: ResultMap, output_path: str) -> None:
        write_results(results, output_path)
