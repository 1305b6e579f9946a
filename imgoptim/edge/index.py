import base64
import dataclasses
import datetime
import logging
import re
import threading
from http import HTTPStatus
from logging import Logger
from typing import Any, Callable, Optional, Protocol, Sequence, Tuple
from urllib import parse

from pathspec import PathSpec
from pathspec.patterns.gitwildmatch import GitWildMatchPattern

from imgoptim.errors import AuthorizationFailure
from imgoptim.logger import init_logging
from imgoptim.signer.index import TrustedKeySet, get_now
from imgoptim.store import ObjectStore, StoreError
from imgoptim.typing import (
    FunctionUrlEvent,
    FunctionUrlResponse,
    HttpPath,
    QueryValue,
    S3Key,
    ViewerRequest,
    ViewerRequestEvent
)
from imgoptim.viewerrequest import index as viewerrequest

ONE_YEAR = 365 * 24 * 60 * 60
FAILOVER_STATUSES = frozenset([HTTPStatus.FORBIDDEN, HTTPStatus.NOT_FOUND])
DEFAULT_CONTENT_TYPE = 'binary/octet-stream'

max_age_re = re.compile(r'(?:^|,)\s*(s-maxage|max-age)=(\d+)\s*(?=,|$)')
no_cache_re = re.compile(r'(?:^|,)\s*(no-store|no-cache|private)\s*(?=,|$)')

logger = init_logging(__name__)


@dataclasses.dataclass
class EdgeRequest:
  uri: HttpPath
  querystring: str = ''
  method: str = 'GET'
  headers: dict[str, str] = dataclasses.field(default_factory=dict)
  client_ip: str = '127.0.0.1'


@dataclasses.dataclass(frozen=True)
class EdgeResponse:
  status: int
  headers: dict[str, str]
  body: bytes = b''

  def with_header(self, name: str, value: str) -> 'EdgeResponse':
    return dataclasses.replace(self, headers={**self.headers, name: value})


def text_response(status: HTTPStatus, body: str) -> EdgeResponse:
  return EdgeResponse(int(status), {'content-type': 'text/plain'}, body.encode())


class Origin(Protocol):
  origin_id: str

  def fetch(self, request: EdgeRequest, source_arn: str) -> EdgeResponse:
    ...


class S3Origin:
  """A bucket that only answers requests signed by its trusted distributions.

  Without s3:ListBucket a missing key is reported as 403, not 404.
  """

  def __init__(
      self,
      origin_id: str,
      store: ObjectStore,
      allowed_source_arns: frozenset[str],
      list_bucket: bool = True,
  ):
    self.origin_id = origin_id
    self.store = store
    self.allowed_source_arns = allowed_source_arns
    self.list_bucket = list_bucket

  def fetch(self, request: EdgeRequest, source_arn: str) -> EdgeResponse:
    if source_arn not in self.allowed_source_arns:
      return text_response(HTTPStatus.FORBIDDEN, 'AccessDenied')

    key = S3Key(parse.unquote(request.uri[1:]))
    try:
      obj = self.store.get(key)
    except StoreError:
      return text_response(HTTPStatus.SERVICE_UNAVAILABLE, 'ServiceUnavailable')

    if obj is None:
      if self.list_bucket:
        return text_response(HTTPStatus.NOT_FOUND, 'NoSuchKey')
      return text_response(HTTPStatus.FORBIDDEN, 'AccessDenied')

    headers = {'content-type': obj.content_type or DEFAULT_CONTENT_TYPE}
    if obj.cache_control is not None:
      headers['cache-control'] = obj.cache_control

    return EdgeResponse(int(HTTPStatus.OK), headers, obj.body)


class FunctionOrigin:
  """A Lambda function URL, called with a payload v2 event."""

  def __init__(
      self,
      origin_id: str,
      handler: Callable[[FunctionUrlEvent], FunctionUrlResponse],
      domain_name: str = 'lambda-url.on.aws',
  ):
    self.origin_id = origin_id
    self.handler = handler
    self.domain_name = domain_name

  def fetch(self, request: EdgeRequest, source_arn: str) -> EdgeResponse:
    event: FunctionUrlEvent = {
        'version': '2.0',
        'rawPath': request.uri,
        'rawQueryString': request.querystring,
        'headers': dict(request.headers),
        'queryStringParameters': {
            k: v[-1] for k, v in parse.parse_qs(request.querystring).items()
        },
        'requestContext': {
            'domainName': self.domain_name,
            'http': {
                'method': request.method,
                'path': request.uri,
                'sourceIp': request.client_ip,
            },
            'requestId': '',
        },
        'isBase64Encoded': False,
    }

    res = self.handler(event)
    body = res.get('body', '')
    if res.get('isBase64Encoded', False):
      data = base64.b64decode(body)
    else:
      data = body.encode()

    return EdgeResponse(int(res['statusCode']), dict(res.get('headers', {})), data)


class OriginGroup:
  """Primary first; the fallback only when the primary fails with a failover status."""

  def __init__(
      self,
      log: Logger,
      origin_id: str,
      primary: Origin,
      fallback: Origin,
      failover_statuses: frozenset[int] = FAILOVER_STATUSES,
  ):
    self.log = log
    self.origin_id = origin_id
    self.primary = primary
    self.fallback = fallback
    self.failover_statuses = failover_statuses

  def fetch(self, request: EdgeRequest, source_arn: str) -> EdgeResponse:
    res = self.primary.fetch(request, source_arn)
    if res.status not in self.failover_statuses:
      return res

    self.log.debug({
        'message': 'failover',
        'origin_group': self.origin_id,
        'from': self.primary.origin_id,
        'to': self.fallback.origin_id,
        'status': res.status,
        'uri': request.uri,
    })
    return self.fallback.fetch(request, source_arn)


def parse_querystring(qstr: str) -> dict[str, QueryValue]:
  qs: dict[str, QueryValue] = {}
  for name, value in parse.parse_qsl(qstr, keep_blank_values=True):
    if name not in qs:
      qs[name] = {'value': value}
    else:
      multi = qs[name].get('multiValue', [{'value': qs[name]['value']}])
      qs[name]['multiValue'] = [*multi, {'value': value}]
  return qs


@dataclasses.dataclass(frozen=True)
class CachePolicy:
  default_ttl: int = ONE_YEAR
  min_ttl: int = 0
  max_ttl: int = ONE_YEAR
  query_strings: Tuple[str, ...] = ()

  def ttl(self, res: EdgeResponse) -> int:
    cache_control = res.headers.get('cache-control', '')
    if no_cache_re.search(cache_control):
      return self.min_ttl

    ages = {m[1]: int(m[2]) for m in max_age_re.finditer(cache_control)}
    age = ages.get('s-maxage', ages.get('max-age'))
    if age is None:
      return self.default_ttl

    return max(self.min_ttl, min(self.max_ttl, age))

  def cache_key(self, pattern: str, uri: str, qstr: str) -> Tuple[Any, ...]:
    qs = parse.parse_qs(qstr, keep_blank_values=True)
    params = tuple((name, tuple(qs[name])) for name in sorted(self.query_strings) if name in qs)
    return (pattern, uri, params)


ViewerFunction = Callable[[ViewerRequestEvent], ViewerRequest]


class CacheBehavior:

  def __init__(
      self,
      target: Origin,
      path_pattern: Optional[str] = None,
      viewer_function: Optional[ViewerFunction] = None,
      cache_policy: CachePolicy = CachePolicy(),
      trusted_key_set: Optional[TrustedKeySet] = None,
      allowed_methods: Sequence[str] = ('GET', 'HEAD'),
  ):
    self.target = target
    self.path_pattern = path_pattern
    self.viewer_function = viewer_function
    self.cache_policy = cache_policy
    self.trusted_key_set = trusted_key_set
    self.allowed_methods = frozenset(allowed_methods)
    self.path_spec = (
        None if path_pattern is None else PathSpec.from_lines(GitWildMatchPattern, [path_pattern]))

  def matches(self, uri: str) -> bool:
    return self.path_spec is None or self.path_spec.match_file(uri.lstrip('/'))


class EdgeCache:

  def __init__(self) -> None:
    self.lock = threading.Lock()
    self.entries: dict[Tuple[Any, ...], Tuple[datetime.datetime, EdgeResponse]] = {}

  def get(self, key: Tuple[Any, ...], now: datetime.datetime) -> Optional[EdgeResponse]:
    with self.lock:
      entry = self.entries.get(key)
      if entry is None:
        return None
      if entry[0] <= now:
        del self.entries[key]
        return None
      return entry[1]

  def put(self, key: Tuple[Any, ...], res: EdgeResponse, expires_at: datetime.datetime) -> None:
    with self.lock:
      self.entries[key] = (expires_at, res)


class Distribution:

  def __init__(
      self,
      log: logging.Logger,
      domain_name: str,
      distribution_id: str,
      account_id: str,
      default_behavior: CacheBehavior,
      behaviors: Sequence[CacheBehavior] = (),
      cache: Optional[EdgeCache] = None,
      clock: Callable[[], datetime.datetime] = get_now,
  ):
    self.log = log
    self.domain_name = domain_name
    self.distribution_id = distribution_id
    self.account_id = account_id
    self.default_behavior = default_behavior
    self.behaviors = list(behaviors)
    self.cache = cache or EdgeCache()
    self.clock = clock

  @property
  def arn(self) -> str:
    return distribution_arn(self.account_id, self.distribution_id)

  def behavior_for(self, uri: str) -> CacheBehavior:
    for behavior in self.behaviors:
      if behavior.matches(uri):
        return behavior
    return self.default_behavior

  def viewer_url(self, request: EdgeRequest) -> str:
    url = f'https://{self.domain_name}{request.uri}'
    if request.querystring != '':
      url = f'{url}?{request.querystring}'
    return url

  def authorize(
      self, behavior: CacheBehavior, request: EdgeRequest, now: datetime.datetime) -> None:
    if behavior.trusted_key_set is None:
      return
    behavior.trusted_key_set.verify(self.viewer_url(request), now, request.client_ip)

  def run_viewer_function(self, behavior: CacheBehavior, request: EdgeRequest) -> EdgeRequest:
    if behavior.viewer_function is None:
      return request

    event: ViewerRequestEvent = {
        'version': '1.0',
        'request': {
            'method': request.method,
            'uri': request.uri,
            'querystring': parse_querystring(request.querystring),
            'headers': {k: {
                'value': v
            } for k, v in request.headers.items()},
        },
    }
    rewritten = behavior.viewer_function(event)
    return dataclasses.replace(request, uri=HttpPath(rewritten['uri']))

  def handle(self, request: EdgeRequest) -> EdgeResponse:
    now = self.clock()
    behavior = self.behavior_for(request.uri)

    try:
      self.authorize(behavior, request, now)
    except AuthorizationFailure as e:
      self.log.warning({
          'message': 'access denied',
          'uri': request.uri,
          'reason': str(e),
      })
      return text_response(AuthorizationFailure.status, 'AccessDenied')

    if request.method not in behavior.allowed_methods:
      return text_response(HTTPStatus.FORBIDDEN, 'MethodNotAllowed')

    origin_request = self.run_viewer_function(behavior, request)
    policy = behavior.cache_policy
    key = policy.cache_key(behavior.path_pattern or '*', origin_request.uri, request.querystring)

    res = self.cache.get(key, now)
    if res is not None:
      self.log.debug({'message': 'cache hit', 'uri': origin_request.uri})
      return self.for_method(request, res.with_header('x-cache', 'Hit from cloudfront'))

    res = behavior.target.fetch(origin_request, self.arn)
    ttl = policy.ttl(res)
    if res.status == HTTPStatus.OK and 0 < ttl:
      self.cache.put(key, res, now + datetime.timedelta(seconds=ttl))

    self.log.debug({
        'message': 'fetched',
        'uri': origin_request.uri,
        'origin': behavior.target.origin_id,
        'status': res.status,
        'ttl': ttl,
    })
    return self.for_method(request, res.with_header('x-cache', 'Miss from cloudfront'))

  @staticmethod
  def for_method(request: EdgeRequest, res: EdgeResponse) -> EdgeResponse:
    if request.method == 'HEAD':
      return dataclasses.replace(res, body=b'')
    return res


def distribution_arn(account_id: str, distribution_id: str) -> str:
  return f'arn:aws:cloudfront::{account_id}:distribution/{distribution_id}'


def oac_bucket_policy(bucket: str, distribution_id: str, account_id: str) -> dict[str, Any]:
  return {
      'Version': '2008-10-17',
      'Id': 'PolicyForCloudFrontPrivateContent',
      'Statement': [
          {
              'Sid': 'AllowCloudFrontServicePrincipal',
              'Effect': 'Allow',
              'Principal': {
                  'Service': 'cloudfront.amazonaws.com',
              },
              'Action': 's3:GetObject',
              'Resource': f'arn:aws:s3:::{bucket}/*',
              'Condition': {
                  'StringEquals': {
                      'AWS:SourceArn': distribution_arn(account_id, distribution_id),
                  },
              },
          },
      ],
  }


def image_distribution(
    domain_name: str,
    distribution_id: str,
    account_id: str,
    source: ObjectStore,
    dest: ObjectStore,
    optimizer: Callable[[FunctionUrlEvent], FunctionUrlResponse],
    trusted_key_set: Optional[TrustedKeySet],
    log: Logger = logger,
    clock: Callable[[], datetime.datetime] = get_now,
) -> Distribution:
  """Wires the optimized, fallback and original routes of the image CDN."""
  allowed = frozenset([distribution_arn(account_id, distribution_id)])
  optimized = S3Origin('optimizedS3', dest, allowed)
  group = OriginGroup(log, 'groupOptim', optimized, FunctionOrigin('lambdaOrigin', optimizer))

  return Distribution(
      log=log,
      domain_name=domain_name,
      distribution_id=distribution_id,
      account_id=account_id,
      default_behavior=CacheBehavior(
          target=group,
          viewer_function=viewerrequest.optimized_main,
          cache_policy=CachePolicy(query_strings=('width', 'quality')),
          trusted_key_set=trusted_key_set),
      behaviors=[
          CacheBehavior(
              target=S3Origin('sourceS3', source, allowed),
              path_pattern='/original/*',
              viewer_function=viewerrequest.original_main,
              cache_policy=CachePolicy(),
              trusted_key_set=trusted_key_set),
      ],
      clock=clock)
