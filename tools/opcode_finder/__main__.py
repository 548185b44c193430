"""
CLI entry point for the opcode finder.

Usage:
    py -3 -m tools.opcode_finder [options]

Examples:
    py -3 -m tools.opcode_finder
    py -3 -m tools.opcode_finder -c config.json -o opcodes.json -v
    py -3 -m tools.opcode_finder --trace "E8 ? ? ? ? 48 8B D8" --hops 3
"""

import argparse
import sys

from . import config
from .finder import OpcodeFinder


def main():
    parser = argparse.ArgumentParser(
        prog="tools.opcode_finder",
        description="Opcode Finder - "
                    "Locate protocol opcodes in a stripped executable "
                    "from byte signatures and jump tables",
    )

    parser.add_argument(
        "-c", "--config",
        default=config.DEFAULT_CONFIG_FILENAME,
        help=f"Path to the signature configuration "
             f"(default: ./{config.DEFAULT_CONFIG_FILENAME})",
    )
    parser.add_argument(
        "-o", "--output",
        default=config.DEFAULT_RESULT_FILENAME,
        help=f"Path of the result document "
             f"(default: ./{config.DEFAULT_RESULT_FILENAME})",
    )
    parser.add_argument(
        "--game",
        default=None,
        help="Override the executable path from the configuration",
    )
    parser.add_argument(
        "-j", "--jobs",
        type=int,
        default=1,
        help="Number of signatures to process in parallel (default: 1)",
    )
    parser.add_argument(
        "--trace",
        metavar="SIGNATURE",
        default=None,
        help="Print the caller chain above a signature's match and exit",
    )
    parser.add_argument(
        "--hops",
        type=int,
        default=1,
        help="Number of caller levels to follow with --trace (default: 1)",
    )
    parser.add_argument(
        "--stats-only",
        action="store_true",
        help="Print statistics only, don't write the result document",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Verbose output with progress information",
    )

    args = parser.parse_args()

    try:
        finder = OpcodeFinder.from_config(
            config_path=args.config,
            game_path=args.game,
            verbose=args.verbose,
        )

        if args.trace:
            chain = finder.trace(args.trace, args.hops)
            sys.exit(0 if chain else 1)

        results = finder.run(jobs=args.jobs)

        if args.stats_only or args.verbose:
            finder.stats(results)

        if not args.stats_only:
            finder.write(results, args.output)
            print(f"\nResults written to {args.output}")

        sys.exit(0)

    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(130)
    except Exception as e:
        print(f"Unexpected error: {e}", file=sys.stderr)
        import traceback
        traceback.print_exc()
        sys.exit(2)


if __name__ == "__main__":
    main()
