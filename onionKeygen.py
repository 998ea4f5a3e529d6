#!/usr/bin/env python3
"""
Onion Vanity Key Generator

Searches the RSA-1024 (v2) or Ed25519 (v3) keyspace for onion addresses that
start with dictionary words. Every match is printed and its private key is
stored in ./keys/<address>.onion.

Usage:
    python onionKeygen.py --file words.txt
    python onionKeygen.py --key ed25519 --min 5 --url http://example.com/words.txt
    python onionKeygen.py --verify keys/*.onion
"""
import argparse
import logging
import multiprocessing
import os
import queue
import sys
import time
from dataclasses import dataclass
from typing import Optional

from onion_dictionary import DictionaryError, filter_words, load_words
from onion_formats import FORMATS, OnionKeygenError, get_format, onion_from_secret
from onion_search import LOG_FORMAT, start_workers, stop_workers

logger = logging.getLogger(__name__)

DEFAULT_MIN_LENGTH = {"rsa": 3, "ed25519": 4}


@dataclass
class SearchConfig:
    """Configuration for one search run."""
    key_format: str = "rsa"
    min_length: int = 3
    dict_file: Optional[str] = None
    dict_url: Optional[str] = None
    keys_dir: str = "./keys"
    num_workers: Optional[int] = None
    max_matches: int = 0  # 0 runs forever
    stats_interval: float = 10.0


def save_key(match, keys_dir):
    """Writes the tagged secret to <keys_dir>/<onion>.onion with mode 600."""
    filename = os.path.join(keys_dir, f"{match.onion}.onion")
    fd = os.open(filename, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(match.secret)
        f.flush()
        os.fsync(f.fileno())
    return filename


def handle_match(match, keys_dir):
    print(match.onion, flush=True)
    try:
        filename = save_key(match, keys_dir)
    except OSError as e:
        logger.error(f"Could not save key for {match.onion}: {e}")
        # Don't lose the key
        print(f"{match.onion} {match.secret}", file=sys.stderr, flush=True)
        return None
    logger.debug(f"Saved {filename}")
    return filename


def consume(results, keys_dir, counter=None, max_matches=0, stats_interval=10.0):
    """
    Single consumer of the results queue. Returns the number of matches
    handled, which only happens once max_matches is reached.
    """
    found = 0
    start_time = time.time()
    while not max_matches or found < max_matches:
        try:
            match = results.get(timeout=stats_interval)
        except queue.Empty:
            if counter is not None:
                elapsed = time.time() - start_time
                checked = counter.value
                rate = checked / elapsed if elapsed > 0 else 0
                logger.info(f"Speed: {rate:,.0f} keys/s | Checked: {checked:,} | Found: {found}")
            continue
        handle_match(match, keys_dir)
        found += 1
    return found


def verify_files(paths):
    """Checks that each key file reproduces the address it is named after."""
    ok = True
    for path in paths:
        expected = os.path.basename(path)
        if expected.endswith(".onion"):
            expected = expected[:-len(".onion")]
        try:
            with open(path, "r") as f:
                secret = f.read().strip()
            onion = onion_from_secret(secret).lower()
        except (OSError, OnionKeygenError) as e:
            logger.error(f"{path}: {e}")
            ok = False
            continue
        if onion == expected.lower():
            print(f"OK       {path}")
        else:
            print(f"MISMATCH {path} derives {onion}")
            ok = False
    return ok


def create_parser():
    parser = argparse.ArgumentParser(
        description="Search for onion addresses that start with dictionary words."
    )
    parser.add_argument("--key", default="rsa", type=str.lower, choices=sorted(FORMATS),
                        help="Onion address format (default: rsa)")
    parser.add_argument("--min", type=int, dest="min_length",
                        help="Minimum word size (default: 3 for rsa, 4 for ed25519)")
    source = parser.add_mutually_exclusive_group()
    source.add_argument("--file", help="Path to dictionary file")
    source.add_argument("--url", help="URL of dictionary file")
    parser.add_argument("--workers", type=int,
                        help="Number of worker processes (default: CPU count)")
    parser.add_argument("--out", default="./keys",
                        help="Directory for found keys (default: ./keys)")
    parser.add_argument("--count", type=int, default=0,
                        help="Stop after this many matches (default: 0, run forever)")
    parser.add_argument("--verify", nargs="+", metavar="KEYFILE",
                        help="Check that key files reproduce their onion address and exit")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Debug logging")
    return parser


def create_config_from_args(args):
    min_length = args.min_length
    if min_length is None:
        min_length = DEFAULT_MIN_LENGTH[args.key]
    return SearchConfig(
        key_format=args.key,
        min_length=min_length,
        dict_file=args.file,
        dict_url=args.url,
        keys_dir=args.out,
        num_workers=args.workers,
        max_matches=args.count
    )


def run(config):
    key_format = get_format(config.key_format)
    words = filter_words(load_words(config.dict_file, config.dict_url), config.min_length)
    print(f"{len(words)} words found.")
    if not words:
        logger.warning(f"No words of at least {config.min_length} characters, nothing can match")

    os.makedirs(config.keys_dir, exist_ok=True)

    print(f"Searching {key_format.name} keys... (Press Ctrl+C to abort)", flush=True)
    processes, results, stop_event, counter = start_workers(
        key_format.name, words, config.num_workers,
        log_level=logging.getLogger().getEffectiveLevel()
    )
    found = 0
    try:
        found = consume(results, config.keys_dir, counter, config.max_matches, config.stats_interval)
    except KeyboardInterrupt:
        print("\nAborted by user.")
    finally:
        # Matches already handed off when the search stopped
        for match in stop_workers(processes, stop_event, results):
            handle_match(match, config.keys_dir)
            found += 1
    return found


def main(argv=None):
    parser = create_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format=LOG_FORMAT
    )

    if args.verify:
        return 0 if verify_files(args.verify) else 1

    if not args.file and not args.url:
        print("No dictionary supplied. See --help for usage.")
        return 0

    config = create_config_from_args(args)
    try:
        run(config)
    except DictionaryError as e:
        logger.error(str(e))
        return 1
    except OnionKeygenError as e:
        logger.error(str(e))
        return 2
    return 0


def cli():
    # Force spawn so workers start from a clean interpreter
    try:
        multiprocessing.set_start_method("spawn", force=True)
    except RuntimeError:
        pass
    sys.exit(main())


if __name__ == "__main__":
    multiprocessing.freeze_support()
    cli()
