"""Pure name normalization and comparison rules used by the resolver.

Nothing here touches the database, so matching rules can be tested on their
own.
"""

import re
import unicodedata

_ARABIC_MARKS = re.compile('[\u0610-\u061A\u064B-\u065F\u0670\u06D6-\u06ED]')
_INVISIBLE = re.compile('[\u0640\u200B-\u200F\u2060-\u206F\uFEFF]')
_ARABIC_FOLDS = str.maketrans({
    '\u0622': '\u0627',  # alef with madda
    '\u0623': '\u0627',  # alef with hamza above
    '\u0625': '\u0627',  # alef with hamza below
    '\u0671': '\u0627',  # alef wasla
    '\u0629': '\u0647',  # taa marbuta
    '\u0649': '\u064A',  # alef maksura
})
_WHITESPACE = re.compile(r'\s+')


def normalize_name(value):
    """Fold a person/place name into its comparison key.

    Case, Latin diacritics, Arabic vowel marks and letter variants,
    punctuation and repeated whitespace do not affect the result.
    """
    text = unicodedata.normalize('NFKD', value or '')
    text = ''.join(ch for ch in text if not unicodedata.combining(ch))
    text = _ARABIC_MARKS.sub('', text)
    text = _INVISIBLE.sub('', text)
    text = text.translate(_ARABIC_FOLDS)
    text = ''.join(ch for ch in text if not unicodedata.category(ch).startswith('P'))
    return _WHITESPACE.sub(' ', text).strip().casefold()


def normalize_header(value):
    """Header labels compare case- and whitespace-insensitively."""
    return _WHITESPACE.sub(' ', (value or '').replace('\ufeff', '')).strip().casefold()


def names_equal(left, right):
    left_key = normalize_name(left)
    return bool(left_key) and left_key == normalize_name(right)


def containment_match(left_key, right_key, min_ratio=0.5):
    """Loose match between two normalized keys.

    One key must contain the other and the shorter must be at least
    ``min_ratio`` of the longer.
    """
    if not left_key or not right_key:
        return False
    if left_key == right_key:
        return True
    if left_key in right_key or right_key in left_key:
        shorter, longer = sorted((len(left_key), len(right_key)))
        return shorter / longer >= min_ratio
    return False


def split_student_name(full_name):
    """Split a full name into (first_name, last_name) on the first space."""
    parts = _WHITESPACE.sub(' ', (full_name or '').strip()).split(' ')
    first = parts[0] if parts else ''
    return first, ' '.join(parts[1:])


def student_name_key(first_name, last_name):
    return normalize_name(f'{first_name or ""} {last_name or ""}')
