"""
Parallel prefix search.

Every worker process loops forever: generate a key, derive its onion address,
test it against the word list. Matches go onto one shared queue.

Worker targets must stay top level functions so the 'spawn' start method
can import them by name.
"""
import logging
import multiprocessing
import os
import queue
import time
from typing import NamedTuple

from onion_formats import get_format

logger = logging.getLogger(__name__)

MAX_CONSECUTIVE_FAILURES = 100
LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"


class Match(NamedTuple):
    """Lowercase onion address and the tagged secret of the key behind it."""
    onion: str
    secret: str


def match_word(onion, words):
    """Return the first word the uppercase onion starts with, or None."""
    for word in words:
        if onion.startswith(word):
            return word
    return None


def emit(results, match, stop_event, poll=1.0):
    """
    Blocks until the match is on the queue. Once the search is stopped it
    gets one more poll for the drain in stop_workers to make room.
    """
    while True:
        stopping = stop_event.is_set()
        try:
            results.put(match, timeout=poll)
            return True
        except queue.Full:
            if stopping:
                logger.error(f"Search stopped before {match.onion} could be handed off")
                return False


def search(key_format, words, results, stop_event, counter=None, batch_size=100):
    """
    Generate candidates until stop_event is set, putting a Match on results
    for every candidate whose address starts with one of the words.

    Only raw strings go onto the queue, never the key object, so matches
    pickle across processes.
    """
    local_attempts = 0
    failures = 0

    while not stop_event.is_set():
        try:
            key = key_format.generate()
            onion = key_format.onion(key).upper()
            word = match_word(onion, words)
            secret = key_format.export_secret(key) if word is not None else None
        except Exception:
            failures += 1
            if failures >= MAX_CONSECUTIVE_FAILURES:
                logger.error(f"{failures} key generation failures in a row, giving up")
                raise
            logger.warning("Key generation failed, discarding candidate", exc_info=True)
            continue
        failures = 0

        if word is not None:
            logger.debug(f"{onion} matches {word}")
            emit(results, Match(onion.lower(), secret), stop_event)

        local_attempts += 1
        if counter is not None and local_attempts >= batch_size:
            with counter.get_lock():
                counter.value += local_attempts
            local_attempts = 0

    if counter is not None and local_attempts:
        with counter.get_lock():
            counter.value += local_attempts


def worker(format_name, words, results, stop_event, counter, batch_size=100,
           log_level=logging.INFO):
    """Process entry point. Ctrl+C is handled by the parent."""
    # Spawned children start with an unconfigured root logger
    logging.basicConfig(level=log_level, format=LOG_FORMAT)
    try:
        search(get_format(format_name), words, results, stop_event, counter, batch_size)
    except KeyboardInterrupt:
        pass


def default_batch_size(format_name):
    # RSA keys take milliseconds each, Ed25519 microseconds
    return 10 if format_name == "rsa" else 1000


def start_workers(format_name, words, num_workers=None, ctx=None, log_level=logging.INFO):
    """
    Start num_workers search processes (one per CPU by default).

    Returns (processes, results, stop_event, counter). The results queue
    holds one match at a time, so a worker with a match waits until the
    consumer has taken the previous one.
    """
    ctx = ctx or multiprocessing.get_context()
    num_workers = num_workers or os.cpu_count() or 1
    results = ctx.Queue(maxsize=1)
    stop_event = ctx.Event()
    counter = ctx.Value("Q", 0)
    batch_size = default_batch_size(format_name)

    processes = []
    for i in range(num_workers):
        p = ctx.Process(
            target=worker,
            args=(format_name, tuple(words), results, stop_event, counter, batch_size, log_level),
            name=f"onion-search-{i}",
            daemon=True
        )
        p.start()
        processes.append(p)

    logger.debug(f"Started {num_workers} {format_name} workers")
    return processes, results, stop_event, counter


def drain(results):
    """Everything currently waiting on the results queue."""
    matches = []
    if results is None:
        return matches
    while True:
        try:
            matches.append(results.get_nowait())
        except queue.Empty:
            return matches


def stop_workers(processes, stop_event, results=None, timeout=5):
    """
    Signal every worker to stop and wait for them, terminating stragglers.

    Returns the matches still on the results queue. The queue is drained
    while waiting so a worker blocked on its last hand-off can finish.
    """
    stop_event.set()
    pending = []
    deadline = time.time() + timeout
    while any(p.is_alive() for p in processes) and time.time() < deadline:
        pending.extend(drain(results))
        for p in processes:
            p.join(0.1)

    for p in processes:
        if p.is_alive():
            logger.warning(f"{p.name} did not stop, terminating")
            p.terminate()
            p.join()

    pending.extend(drain(results))
    return pending
