import base64
import dataclasses
import logging
import os
import threading
import time
from enum import Enum
from http import HTTPStatus
from logging import Logger
from typing import Any, Callable, Mapping, Optional, Tuple
from urllib import parse

import boto3
from pyvips import Error as VipsError  # type: ignore
from pyvips import Image  # type: ignore

from imgoptim.errors import (
    OptimizeError,
    SourceUnavailable,
    StoreProbeFailure,
    TransformFailed
)
from imgoptim.key import CanonicalKey
from imgoptim.logger import init_logging
from imgoptim.store import (
    ObjectStore,
    Probe,
    S3Store,
    StoredObject,
    StoreError
)
from imgoptim.typing import FunctionUrlEvent, FunctionUrlResponse

OUTPUT_EXTENSION = '.jpg'
OUTPUT_CONTENT_TYPE = 'image/jpeg'
DEFAULT_CACHE_MAX_AGE = 365 * 24 * 60 * 60
RETRY_AFTER = 1

BACKGROUND_COLOR = [255.0, 255.0, 255.0]

logger = init_logging(__name__)


class ProbeFailurePolicy(Enum):
  REGENERATE = 0
  RETRY = 1


@dataclasses.dataclass(eq=True, frozen=True)
class XParams:
  region: str
  source_bucket: str
  dest_bucket: str
  cache_max_age: int
  probe_failure_policy: ProbeFailurePolicy
  lease_seconds: float


@dataclasses.dataclass(frozen=True)
class OptimizedImage:
  body: bytes
  content_type: str
  cache_control: str
  generated: bool
  vips_us: Optional[int] = None


@dataclasses.dataclass
class Lease:
  key: str
  expires_at: float
  done: threading.Event = dataclasses.field(default_factory=threading.Event)


class Leases:
  """Per-key generation leases with expiry.

  At most one caller holds an unexpired lease for a key. Others wait until
  the holder releases it or the lease expires, whichever comes first, so a
  holder that never returns delays generation by at most one lease period.
  """

  def __init__(self, duration: float, clock: Callable[[], float] = time.monotonic):
    self.duration = duration
    self.clock = clock
    self.lock = threading.Lock()
    self.held: dict[str, Lease] = {}

  def acquire(self, key: str) -> Tuple[bool, Lease]:
    with self.lock:
      now = self.clock()
      lease = self.held.get(key)
      if lease is not None and now < lease.expires_at:
        return False, lease

      lease = Lease(key=key, expires_at=now + self.duration)
      self.held[key] = lease
      return True, lease

  def release(self, lease: Lease) -> None:
    with self.lock:
      if self.held.get(lease.key) is lease:
        del self.held[lease.key]
    lease.done.set()

  def wait(self, lease: Lease) -> None:
    lease.done.wait(max(0.0, lease.expires_at - self.clock()))


def resize_image(data: bytes, width: int, quality: int) -> bytes:
  image: Image = Image.new_from_buffer(data, '')
  image = image.resize(width / image.get('width'))
  if image.hasalpha():
    image = image.flatten(background=BACKGROUND_COLOR)
  return image.write_to_buffer(OUTPUT_EXTENSION, Q=quality)


class ImgOptimizer:
  instances: dict[XParams, 'ImgOptimizer'] = {}

  def __init__(
      self,
      log: logging.Logger,
      source: ObjectStore,
      dest: ObjectStore,
      cache_max_age: int = DEFAULT_CACHE_MAX_AGE,
      probe_failure_policy: ProbeFailurePolicy = ProbeFailurePolicy.REGENERATE,
      leases: Optional[Leases] = None,
  ):
    self.log = log
    self.source = source
    self.dest = dest
    self.cache_max_age = cache_max_age
    self.probe_failure_policy = probe_failure_policy
    self.leases = leases
    self.cache_control = f'public, max-age={self.cache_max_age}'
    # Instances are shared across requests, so the context is per thread.
    self.local = threading.local()

  @classmethod
  def from_env(cls, log: Logger, env: Mapping[str, str]) -> Optional['ImgOptimizer']:
    try:
      source_bucket = env['SOURCE_BUCKET']
      dest_bucket = env['DEST_BUCKET']
      region = env.get('AWS_REGION', 'us-east-1')
      cache_max_age = int(env.get('CACHE_MAX_AGE', str(DEFAULT_CACHE_MAX_AGE)))
      policy_name = env.get('PROBE_FAILURE_POLICY', 'regenerate').upper()
      if policy_name not in ProbeFailurePolicy.__members__:
        raise ValueError(f'unknown probe failure policy: {policy_name}')
      probe_failure_policy = ProbeFailurePolicy[policy_name]
      lease_seconds = float(env.get('LEASE_SECONDS', '0'))
    except KeyError as e:
      log.warning({
          'message': 'environment variable not found',
          'key': str(e),
      })
      return None
    except ValueError as e:
      log.warning({
          'message': 'invalid environment variable',
          'reason': str(e),
      })
      return None

    server_key = XParams(
        region=region,
        source_bucket=source_bucket,
        dest_bucket=dest_bucket,
        cache_max_age=cache_max_age,
        probe_failure_policy=probe_failure_policy,
        lease_seconds=lease_seconds)

    if server_key not in cls.instances:
      s3 = boto3.client('s3', region_name=region)
      cls.instances[server_key] = cls(
          log=log,
          source=S3Store(s3, source_bucket),
          dest=S3Store(s3, dest_bucket),
          cache_max_age=cache_max_age,
          probe_failure_policy=probe_failure_policy,
          leases=Leases(lease_seconds) if 0 < lease_seconds else None)

    return cls.instances[server_key]

  def log_warning(self, message: str, dict: dict[str, Any]) -> None:
    self.log.warning({
        'message': message,
        **self.log_context,
        **dict,
    })

  def log_debug(self, message: str, dict: dict[str, Any]) -> None:
    self.log.debug({
        'message': message,
        **self.log_context,
        **dict,
    })

  def log_error(self, message: str, dict: dict[str, Any]) -> None:
    self.log.error({
        'message': message,
        **self.log_context,
        **dict,
    })

  @property
  def log_context(self) -> dict[str, str]:
    return getattr(self.local, 'log_context', {'path': '', 'qstr': ''})

  def set_log_context(self, path: str, qstr: str) -> None:
    self.local.log_context = {'path': path, 'qstr': qstr}

  def from_cache(self, obj: StoredObject) -> OptimizedImage:
    return OptimizedImage(
        body=obj.body,
        content_type=obj.content_type or OUTPUT_CONTENT_TYPE,
        cache_control=self.cache_control,
        generated=False)

  def probe(self, key: CanonicalKey) -> Optional[StoredObject]:
    res = self.dest.probe(key.to_key())
    match res.state:
      case Probe.PRESENT:
        return res.obj
      case Probe.CONFIRMED_ABSENT:
        return None
      case Probe.UNKNOWN:
        if self.probe_failure_policy == ProbeFailurePolicy.RETRY:
          raise StoreProbeFailure(res.reason)
        self.log_warning('probe failed, regenerating', {'reason': res.reason, 'key': str(key)})
        return None
      case _:
        raise Exception('system error')

  def generate(self, key: CanonicalKey) -> OptimizedImage:
    try:
      orig = self.source.get(key.original_key)
    except StoreError as e:
      raise SourceUnavailable(str(e)) from e
    if orig is None:
      raise SourceUnavailable(f'original not found: {key.original_key}')

    start_ns = time.time_ns()
    try:
      body = resize_image(orig.body, key.width, key.quality)
    except VipsError as e:
      raise TransformFailed(str(e)) from e
    vips_us = (time.time_ns() - start_ns) // 1000

    try:
      self.dest.put(
          key.to_key(),
          StoredObject(
              body=body, content_type=OUTPUT_CONTENT_TYPE, cache_control=self.cache_control))
    except StoreError as e:
      self.log_error('failed to store variant', {'reason': str(e), 'key': str(key)})

    return OptimizedImage(
        body=body,
        content_type=OUTPUT_CONTENT_TYPE,
        cache_control=self.cache_control,
        generated=True,
        vips_us=vips_us)

  def generate_once(self, key: CanonicalKey) -> OptimizedImage:
    if self.leases is None:
      return self.generate(key)

    while True:
      owned, lease = self.leases.acquire(str(key))
      if owned:
        try:
          # The previous holder may have finished between our probe and acquire.
          res = self.dest.probe(key.to_key())
          if res.state == Probe.PRESENT and res.obj is not None:
            return self.from_cache(res.obj)
          return self.generate(key)
        finally:
          self.leases.release(lease)

      self.log_debug('waiting for concurrent generation', {'key': str(key)})
      self.leases.wait(lease)

  def optimize(self, path: str) -> OptimizedImage:
    key = CanonicalKey.parse(path)
    cached = self.probe(key)
    if cached is not None:
      return self.from_cache(cached)
    return self.generate_once(key)

  def handle(self, event: FunctionUrlEvent) -> FunctionUrlResponse:
    path = path_from_event(event)
    self.set_log_context(path, event.get('rawQueryString', ''))

    try:
      image = self.optimize(path)
    except OptimizeError as e:
      self.log_warning('optimization failed', {'error': type(e).__name__, 'reason': str(e)})
      return error_response(e)
    except Exception as e:
      self.log_error('error during optimize()', {'reason': str(e)})
      return error_response(OptimizeError(str(e)))

    self.log_debug(
        'responded', {
            'generated': image.generated,
            'content_type': image.content_type,
            'img_size': len(image.body),
            'vips_us': image.vips_us,
        })
    return image_response(image)


def path_from_event(event: FunctionUrlEvent) -> str:
  return parse.unquote(event.get('rawPath') or event.get('path') or '')


def image_response(image: OptimizedImage) -> FunctionUrlResponse:
  return {
      'statusCode': HTTPStatus.OK,
      'isBase64Encoded': True,
      'headers': {
          'content-type': image.content_type,
          'cache-control': image.cache_control,
      },
      'body': base64.b64encode(image.body).decode(),
  }


def error_response(e: OptimizeError) -> FunctionUrlResponse:
  res: FunctionUrlResponse = {
      'statusCode': int(e.status),
      'headers': {
          'content-type': 'text/plain',
      },
      'body': e.body,
  }
  if isinstance(e, StoreProbeFailure):
    res['headers']['retry-after'] = str(RETRY_AFTER)
  return res


def lambda_main(event: FunctionUrlEvent) -> FunctionUrlResponse:
  optimizer = ImgOptimizer.from_env(logger, os.environ)
  if optimizer is None:
    return {
        'statusCode': HTTPStatus.INTERNAL_SERVER_ERROR,
        'headers': {
            'content-type': 'text/plain',
        },
        'body': 'Image optimizer is not configured',
    }

  return optimizer.handle(event)
