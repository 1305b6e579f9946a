import dataclasses
import threading
from enum import Enum
from typing import Optional, Protocol

from botocore.exceptions import BotoCoreError, ClientError
from mypy_boto3_s3.client import S3Client

from imgoptim.typing import S3Key


@dataclasses.dataclass(frozen=True)
class StoredObject:
  body: bytes
  content_type: Optional[str] = None
  cache_control: Optional[str] = None


class Probe(Enum):
  PRESENT = 0
  CONFIRMED_ABSENT = 1
  UNKNOWN = 2


@dataclasses.dataclass(frozen=True)
class ProbeResult:
  state: Probe
  obj: Optional[StoredObject] = None
  reason: Optional[str] = None


class StoreError(Exception):
  pass


class ObjectStore(Protocol):
  name: str

  def probe(self, key: S3Key) -> ProbeResult:
    ...

  def get(self, key: S3Key) -> Optional[StoredObject]:
    ...

  def put(self, key: S3Key, obj: StoredObject) -> None:
    ...


def is_not_found_client_error(exception: ClientError) -> bool:
  if 'Error' not in exception.response:
    return False
  if 'Code' not in exception.response['Error']:
    return False
  return exception.response['Error']['Code'] in ['404', 'NoSuchKey', 'NotFound']


class S3Store:
  """Objects in one S3 bucket, keyed as they are."""

  def __init__(self, s3: S3Client, bucket: str):
    self.s3 = s3
    self.bucket = bucket
    self.name = bucket

  def probe(self, key: S3Key) -> ProbeResult:
    try:
      obj = self.get(key)
    except StoreError as e:
      return ProbeResult(Probe.UNKNOWN, reason=str(e))

    if obj is None:
      return ProbeResult(Probe.CONFIRMED_ABSENT)
    return ProbeResult(Probe.PRESENT, obj=obj)

  def get(self, key: S3Key) -> Optional[StoredObject]:
    try:
      res = self.s3.get_object(Bucket=self.bucket, Key=key)
      body = res['Body'].read()
    except ClientError as e:
      if is_not_found_client_error(e):
        return None
      raise StoreError(f'get_object failed: {self.bucket}/{key}: {e}') from e
    except BotoCoreError as e:
      raise StoreError(f'get_object failed: {self.bucket}/{key}: {e}') from e

    return StoredObject(
        body=body, content_type=res.get('ContentType'), cache_control=res.get('CacheControl'))

  def put(self, key: S3Key, obj: StoredObject) -> None:
    extra = {}
    if obj.content_type is not None:
      extra['ContentType'] = obj.content_type
    if obj.cache_control is not None:
      extra['CacheControl'] = obj.cache_control

    try:
      self.s3.put_object(Bucket=self.bucket, Key=key, Body=obj.body, **extra)
    except (ClientError, BotoCoreError) as e:
      raise StoreError(f'put_object failed: {self.bucket}/{key}: {e}') from e


class MemoryStore:
  """Dict-backed store for local runs and tests. Records every access."""

  def __init__(self, name: str, objects: Optional[dict[str, StoredObject]] = None):
    self.name = name
    self.objects: dict[str, StoredObject] = dict(objects or {})
    self.accesses: list[tuple[str, str]] = []
    self.failing = False
    self.lock = threading.Lock()

  def record(self, op: str, key: S3Key) -> None:
    with self.lock:
      self.accesses.append((op, key))
    if self.failing:
      raise StoreError(f'{self.name} is unavailable')

  def probe(self, key: S3Key) -> ProbeResult:
    try:
      obj = self.get(key)
    except StoreError as e:
      return ProbeResult(Probe.UNKNOWN, reason=str(e))

    if obj is None:
      return ProbeResult(Probe.CONFIRMED_ABSENT)
    return ProbeResult(Probe.PRESENT, obj=obj)

  def get(self, key: S3Key) -> Optional[StoredObject]:
    self.record('get', key)
    with self.lock:
      return self.objects.get(key)

  def put(self, key: S3Key, obj: StoredObject) -> None:
    self.record('put', key)
    with self.lock:
      self.objects[key] = obj

  def accessed(self, op: Optional[str] = None) -> list[str]:
    return [k for o, k in self.accesses if op is None or o == op]
