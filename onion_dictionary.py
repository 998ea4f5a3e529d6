"""
Dictionary loading and filtering.

Words are whitespace separated, from a local file or fetched over HTTP.
"""
import logging

import requests

from onion_formats import OnionKeygenError

logger = logging.getLogger(__name__)

URL_TIMEOUT = 60


class DictionaryError(OnionKeygenError):
    """The dictionary could not be read or fetched."""


def filter_words(words, min_length):
    """Uppercase every word of at least min_length characters, drop the rest."""
    return [word.upper() for word in words if len(word) >= min_length]


def read_dict_file(path):
    try:
        with open(path, "r", encoding="utf-8") as f:
            body = f.read()
    except (OSError, UnicodeDecodeError) as e:
        raise DictionaryError(f"cannot read dictionary file {path}: {e}") from e
    return body.split()


def read_dict_url(url):
    """
    Fetch a dictionary over HTTP.

    Args:
        url (str): URL of a plain text word list

    Returns:
        list: words of the response body

    Raises:
        DictionaryError: on connection failure or a non 2xx response
    """
    try:
        response = requests.get(url, timeout=URL_TIMEOUT)
        response.raise_for_status()
    except requests.RequestException as e:
        raise DictionaryError(f"cannot fetch dictionary from {url}: {e}") from e
    return response.text.split()


def load_words(dict_file=None, dict_url=None):
    if dict_file:
        logger.info(f"Loading dictionary from {dict_file}")
        return read_dict_file(dict_file)
    if dict_url:
        logger.info(f"Fetching dictionary from {dict_url}")
        return read_dict_url(dict_url)
    raise DictionaryError("no dictionary source given")
