from typing import Mapping, Optional

from imgoptim.key import (
    DEFAULT_QUALITY,
    DEFAULT_WIDTH,
    MAX_QUALITY,
    parse_positive_int,
    strip_leading_slashes
)
from imgoptim.typing import HttpPath, QueryValue, ViewerRequest, ViewerRequestEvent

ORIGINAL_PREFIX = '/original'

WIDTH_PARAM = 'width'
QUALITY_PARAMS = ['quality', 'q']


def query_value(qs: Mapping[str, QueryValue], name: str) -> Optional[str]:
  if name not in qs:
    return None
  return qs[name]['value']


def width_from_query(qs: Mapping[str, QueryValue]) -> int:
  width = parse_positive_int(query_value(qs, WIDTH_PARAM))
  return DEFAULT_WIDTH if width is None else width


def quality_from_query(qs: Mapping[str, QueryValue]) -> int:
  for name in QUALITY_PARAMS:
    quality = parse_positive_int(query_value(qs, name), MAX_QUALITY)
    if quality is not None:
      return quality
  return DEFAULT_QUALITY


def derive_optimized_uri(uri: str, qs: Mapping[str, QueryValue]) -> HttpPath:
  path = strip_leading_slashes(uri)
  return HttpPath(f'/{width_from_query(qs)}x{quality_from_query(qs)}/{path}')


def strip_original_prefix(uri: str) -> HttpPath:
  if uri.startswith(f'{ORIGINAL_PREFIX}/'):
    return HttpPath(uri[len(ORIGINAL_PREFIX):])
  return HttpPath(uri)


def optimized_main(event: ViewerRequestEvent) -> ViewerRequest:
  req = event['request']
  req['uri'] = derive_optimized_uri(req['uri'], req['querystring'])
  return req


def original_main(event: ViewerRequestEvent) -> ViewerRequest:
  req = event['request']
  req['uri'] = strip_original_prefix(req['uri'])
  return req
