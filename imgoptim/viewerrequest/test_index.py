from typing import Any

import pytest

from imgoptim.typing import QueryValue, ViewerRequestEvent

from .index import (
    derive_optimized_uri,
    optimized_main,
    original_main,
    strip_original_prefix
)


def qs(**params: str) -> dict[str, QueryValue]:
  return {k: {'value': v} for k, v in params.items()}


def event(uri: str, querystring: dict[str, QueryValue]) -> ViewerRequestEvent:
  return {
      'version': '1.0',
      'request': {
          'method': 'GET',
          'uri': uri,
          'querystring': querystring,
          'headers': {},
      },
  }


@pytest.mark.parametrize(
    'uri,querystring,expected', [
        ('/cat.png', {}, '/300x60/cat.png'),
        ('/cat.png', qs(width='200', quality='70'), '/200x70/cat.png'),
        ('/cat.png', qs(width='200', q='70'), '/200x70/cat.png'),
        ('/cat.png', qs(quality='80', q='70'), '/300x80/cat.png'),
        ('/cat.png', qs(quality='abc', q='70'), '/300x70/cat.png'),
        ('/a/b/cat.png', qs(width='1024'), '/1024x60/a/b/cat.png'),
        ('//cat.png', qs(width='200'), '/200x60/cat.png'),
        ('/cat.png', qs(width='abc', quality='-5'), '/300x60/cat.png'),
        ('/cat.png', qs(width='0', quality='0'), '/300x60/cat.png'),
        ('/cat.png', qs(width='12.5', quality='101'), '/300x60/cat.png'),
        ('/cat.png', qs(width=''), '/300x60/cat.png'),
    ],
    ids=[
        'defaults',
        'width_and_quality',
        'short_quality',
        'quality_wins',
        'malformed_quality_falls_to_q',
        'nested',
        'leading_slashes',
        'malformed',
        'zero',
        'fraction_and_out_of_range',
        'empty',
    ])
def test_derive_optimized_uri(uri: str, querystring: dict[str, QueryValue], expected: str) -> None:
  assert derive_optimized_uri(uri, querystring) == expected


def test_derive_is_pure() -> None:
  querystring = qs(width='200', quality='70')
  assert derive_optimized_uri('/cat.png', querystring) == derive_optimized_uri(
      '/cat.png', querystring)
  assert querystring == qs(width='200', quality='70')


def test_derive_applied_twice_is_not_a_noop() -> None:
  once = derive_optimized_uri('/cat.png', qs(width='200', quality='70'))
  assert derive_optimized_uri(once, qs(width='200', quality='70')) == '/200x70/200x70/cat.png'


@pytest.mark.parametrize(
    'uri,expected', [
        ('/original/cat.png', '/cat.png'),
        ('/original/a/b/cat.png', '/a/b/cat.png'),
        ('/cat.png', '/cat.png'),
        ('/originals/cat.png', '/originals/cat.png'),
        ('/original', '/original'),
        ('/x/original/cat.png', '/x/original/cat.png'),
    ])
def test_strip_original_prefix(uri: str, expected: str) -> None:
  assert strip_original_prefix(uri) == expected


def test_optimized_main() -> None:
  querystring: Any = qs(width='200', quality='70', Expires='1')
  req = optimized_main(event('/cat.png', querystring))

  assert req['uri'] == '/200x70/cat.png'
  assert req['querystring'] == querystring


def test_original_main() -> None:
  req = original_main(event('/original/cat.png', qs(width='200')))

  assert req['uri'] == '/cat.png'
  assert req['querystring'] == qs(width='200')
