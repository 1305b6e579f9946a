import itertools

import pytest

from imgoptim.errors import InvalidKeyFormat
from imgoptim.key import CanonicalKey, parse_positive_int


@pytest.mark.parametrize(
    'path,expected', [
        ('300x60/cat.png', CanonicalKey(300, 60, 'cat.png')),
        ('/200x70/cat.png', CanonicalKey(200, 70, 'cat.png')),
        ('///200x70/a/b/c.jpg', CanonicalKey(200, 70, 'a/b/c.jpg')),
        ('0200x070/cat.png', CanonicalKey(200, 70, 'cat.png')),
        ('1x100/x', CanonicalKey(1, 100, 'x')),
        ('200x70/200x70/cat.png', CanonicalKey(200, 70, '200x70/cat.png')),
    ],
    ids=['plain', 'leading_slash', 'slashes_and_dirs', 'leading_zeros', 'bounds', 'nested_prefix'])
def test_parse(path: str, expected: CanonicalKey) -> None:
  assert CanonicalKey.parse(path) == expected


@pytest.mark.parametrize(
    'path', [
        'abc/foo.jpg',
        '300x60',
        '300x60/',
        '300x/foo.jpg',
        'x60/foo.jpg',
        '300x60x1/foo.jpg',
        '0x60/foo.jpg',
        '300x0/foo.jpg',
        '300x101/foo.jpg',
        '300x60//foo.jpg',
        '300x60/cat.png\n',
        '300x60/a\nb.png',
        '',
    ])
def test_parse_invalid(path: str) -> None:
  with pytest.raises(InvalidKeyFormat):
    CanonicalKey.parse(path)


def test_to_key() -> None:
  key = CanonicalKey.create(200, 70, 'cat.png')
  assert key.to_key() == '200x70/cat.png'
  assert str(key) == '200x70/cat.png'
  assert key.prefix == '200x70'


def test_round_trip_from_path() -> None:
  key = CanonicalKey.create(640, 85, 'photos/2024/dog.jpeg')
  assert CanonicalKey.parse(key.to_key()) == key


def test_injective() -> None:
  triples = list(
      itertools.product([1, 10, 11, 101, 110], [1, 10, 11, 100], ['a', '1/a', '0x1/a', 'x/a']))
  keys = {CanonicalKey.create(w, q, k).to_key() for w, q, k in triples}
  assert len(keys) == len(triples)


def test_deterministic() -> None:
  assert CanonicalKey.create(300, 60, 'cat.png').to_key() == CanonicalKey.create(
      300, 60, 'cat.png').to_key()


@pytest.mark.parametrize(
    'width,quality,original_key', [
        (0, 60, 'cat.png'),
        (-1, 60, 'cat.png'),
        (300, 0, 'cat.png'),
        (300, 101, 'cat.png'),
        (300, 60, ''),
        (300, 60, '/cat.png'),
    ])
def test_create_invalid(width: int, quality: int, original_key: str) -> None:
  with pytest.raises(InvalidKeyFormat):
    CanonicalKey.create(width, quality, original_key)


@pytest.mark.parametrize(
    's,upper,expected', [
        ('300', None, 300),
        ('0', None, None),
        ('-1', None, None),
        ('1.5', None, None),
        ('', None, None),
        (None, None, None),
        (' 30', None, None),
        ('１２', None, None),
        ('100', 100, 100),
        ('101', 100, None),
    ])
def test_parse_positive_int(s: str | None, upper: int | None, expected: int | None) -> None:
  assert parse_positive_int(s, upper) == expected
