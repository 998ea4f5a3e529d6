import logging
import os
import queue
import stat

import pytest

import onionKeygen
from onion_formats import Ed25519V3Format, Rsa1024Format
from onion_search import Match
from onionKeygen import (
    SearchConfig,
    consume,
    create_config_from_args,
    create_parser,
    handle_match,
    main,
    run,
    save_key,
    verify_files,
)


@pytest.fixture(scope="module")
def ed_match():
    fmt = Ed25519V3Format()
    key = fmt.generate()
    return Match(fmt.onion(key).lower(), fmt.export_secret(key))


class Counter:
    def __init__(self, value):
        self.value = value


class SlowQueue:
    """Times out once before handing out its matches."""

    def __init__(self, matches):
        self.matches = list(matches)
        self.timed_out = False

    def get(self, timeout=None):
        if not self.timed_out:
            self.timed_out = True
            raise queue.Empty
        return self.matches.pop(0)


def test_save_key(tmp_path, ed_match):
    filename = save_key(ed_match, str(tmp_path))
    assert filename == os.path.join(str(tmp_path), f"{ed_match.onion}.onion")
    with open(filename) as f:
        assert f.read() == ed_match.secret
    assert stat.S_IMODE(os.stat(filename).st_mode) == 0o600


def test_handle_match_prints_onion(tmp_path, capsys, ed_match):
    assert handle_match(ed_match, str(tmp_path))
    out = capsys.readouterr().out
    assert out == ed_match.onion + "\n"


def test_handle_match_keeps_secret_when_save_fails(tmp_path, capsys, caplog, ed_match):
    with caplog.at_level(logging.ERROR):
        assert handle_match(ed_match, str(tmp_path / "missing")) is None
    captured = capsys.readouterr()
    assert ed_match.secret in captured.err
    assert "Could not save key" in caplog.text


def test_consume_stops_after_max_matches(tmp_path, ed_match):
    results = queue.Queue()
    other = Match("a" * 56, ed_match.secret)
    results.put(ed_match)
    results.put(other)
    assert consume(results, str(tmp_path), max_matches=2, stats_interval=0.1) == 2
    assert sorted(os.listdir(tmp_path)) == sorted([f"{ed_match.onion}.onion", f"{'a' * 56}.onion"])


def test_consume_logs_speed(tmp_path, caplog, ed_match):
    with caplog.at_level(logging.INFO):
        found = consume(SlowQueue([ed_match]), str(tmp_path), Counter(1234), max_matches=1)
    assert found == 1
    assert "Checked: 1,234" in caplog.text


def test_verify_files(tmp_path, capsys, ed_match):
    good = tmp_path / f"{ed_match.onion}.onion"
    good.write_text(ed_match.secret)
    bad = tmp_path / f"{'b' * 56}.onion"
    bad.write_text(ed_match.secret)
    garbage = tmp_path / "junk.onion"
    garbage.write_text("RSA1024:%%%")

    assert verify_files([str(good)])
    assert not verify_files([str(good), str(bad), str(garbage)])
    out = capsys.readouterr().out
    assert f"OK       {good}" in out
    assert f"MISMATCH {bad}" in out


def test_verify_rsa_key_file(tmp_path):
    fmt = Rsa1024Format()
    key = fmt.generate()
    path = tmp_path / f"{fmt.onion(key).lower()}.onion"
    path.write_text(fmt.export_secret(key))
    assert main(["--verify", str(path)]) == 0


def test_config_defaults_follow_key_format():
    parser = create_parser()
    config = create_config_from_args(parser.parse_args(["--file", "w.txt"]))
    assert config.key_format == "rsa"
    assert config.min_length == 3
    assert config.keys_dir == "./keys"
    assert config.max_matches == 0

    config = create_config_from_args(parser.parse_args(["--key", "ED25519", "--url", "http://x"]))
    assert config.key_format == "ed25519"
    assert config.min_length == 4
    assert config.dict_url == "http://x"

    config = create_config_from_args(parser.parse_args(["--key", "ed25519", "--min", "6", "--file", "w"]))
    assert config.min_length == 6


def test_no_dictionary_exits_cleanly(capsys):
    assert main([]) == 0
    assert "No dictionary supplied" in capsys.readouterr().out


def test_unknown_key_format_is_fatal():
    with pytest.raises(SystemExit) as exc:
        main(["--key", "dsa", "--file", "words.txt"])
    assert exc.value.code == 2


def test_file_and_url_are_exclusive():
    with pytest.raises(SystemExit):
        main(["--file", "a", "--url", "http://b"])


def test_missing_dictionary_file(tmp_path, monkeypatch):
    def no_workers(*args, **kwargs):
        raise AssertionError("search must not start")

    monkeypatch.setattr(onionKeygen, "start_workers", no_workers)
    assert main(["--file", str(tmp_path / "nope.txt")]) == 1


def test_run_saves_matches(tmp_path, monkeypatch, ed_match, caplog):
    words_file = tmp_path / "words.txt"
    words_file.write_text("ab cd")
    keys_dir = tmp_path / "keys"
    stopped = []

    def fake_start_workers(format_name, words, num_workers=None, log_level=logging.INFO):
        assert format_name == "ed25519"
        assert words == []
        results = queue.Queue()
        results.put(ed_match)
        return [], results, None, Counter(0)

    def fake_stop_workers(processes, stop_event, results=None):
        stopped.append(True)
        return []

    monkeypatch.setattr(onionKeygen, "start_workers", fake_start_workers)
    monkeypatch.setattr(onionKeygen, "stop_workers", fake_stop_workers)

    config = SearchConfig(key_format="ed25519", min_length=4, dict_file=str(words_file),
                          keys_dir=str(keys_dir), max_matches=1)
    with caplog.at_level(logging.WARNING):
        assert run(config) == 1
    assert "nothing can match" in caplog.text
    assert stopped == [True]
    assert (keys_dir / f"{ed_match.onion}.onion").read_text() == ed_match.secret


def test_run_saves_matches_pending_at_shutdown(tmp_path, monkeypatch, ed_match, capsys):
    words_file = tmp_path / "words.txt"
    words_file.write_text("abcd")
    keys_dir = tmp_path / "keys"
    late = Match("c" * 56, ed_match.secret)
    levels = []

    def fake_start_workers(format_name, words, num_workers=None, log_level=logging.INFO):
        levels.append(log_level)
        results = queue.Queue()
        results.put(ed_match)
        return [], results, None, Counter(0)

    def fake_stop_workers(processes, stop_event, results=None):
        # A worker handed off one more match before it saw the stop signal
        return [late]

    monkeypatch.setattr(onionKeygen, "start_workers", fake_start_workers)
    monkeypatch.setattr(onionKeygen, "stop_workers", fake_stop_workers)

    config = SearchConfig(key_format="ed25519", min_length=4, dict_file=str(words_file),
                          keys_dir=str(keys_dir), max_matches=1)
    assert run(config) == 2
    assert (keys_dir / f"{late.onion}.onion").read_text() == late.secret
    assert late.onion in capsys.readouterr().out
    assert levels == [logging.getLogger().getEffectiveLevel()]


def test_run_saves_pending_matches_on_ctrl_c(tmp_path, monkeypatch, ed_match):
    words_file = tmp_path / "words.txt"
    words_file.write_text("abcd")
    keys_dir = tmp_path / "keys"

    class InterruptedQueue:
        def get(self, timeout=None):
            raise KeyboardInterrupt

    monkeypatch.setattr(onionKeygen, "start_workers",
                        lambda *args, **kwargs: ([], InterruptedQueue(), None, Counter(0)))
    monkeypatch.setattr(onionKeygen, "stop_workers",
                        lambda processes, stop_event, results=None: [ed_match])

    config = SearchConfig(key_format="ed25519", min_length=4, dict_file=str(words_file),
                          keys_dir=str(keys_dir))
    assert run(config) == 1
    assert (keys_dir / f"{ed_match.onion}.onion").read_text() == ed_match.secret
