import base64
import logging
from http import HTTPStatus
from typing import Any, Iterator

import pytest
from pyvips import Image  # type: ignore

from imgoptim.optimizer.index import ImgOptimizer, ProbeFailurePolicy, XParams
from imgoptim.store import MemoryStore, StoredObject
from index import optimizer_lambda_handler

REGION = 'ap-northeast-1'
SOURCE_BUCKET = 'source-images'
DEST_BUCKET = 'optimized-images'


@pytest.fixture
def env(monkeypatch: pytest.MonkeyPatch) -> Iterator[XParams]:
  monkeypatch.setenv('SOURCE_BUCKET', SOURCE_BUCKET)
  monkeypatch.setenv('DEST_BUCKET', DEST_BUCKET)
  monkeypatch.setenv('AWS_REGION', REGION)
  for name in ['CACHE_MAX_AGE', 'PROBE_FAILURE_POLICY', 'LEASE_SECONDS']:
    monkeypatch.delenv(name, raising=False)

  server_key = XParams(
      region=REGION,
      source_bucket=SOURCE_BUCKET,
      dest_bucket=DEST_BUCKET,
      cache_max_age=365 * 24 * 60 * 60,
      probe_failure_policy=ProbeFailurePolicy.REGENERATE,
      lease_seconds=0.0)
  yield server_key
  ImgOptimizer.instances.pop(server_key, None)


def lambda_context() -> Any:
  return None


def test_handler(env: XParams) -> None:
  png = Image.black(40, 20, bands=3).write_to_buffer('.png')
  source = MemoryStore(SOURCE_BUCKET, {'a/cat.png': StoredObject(png, 'image/png')})
  dest = MemoryStore(DEST_BUCKET)
  ImgOptimizer.instances[env] = ImgOptimizer(
      log=logging.getLogger(__name__), source=source, dest=dest)

  res = optimizer_lambda_handler({
      'version': '2.0',
      'rawPath': '/20x70/a/cat.png',
      'headers': {},
  }, lambda_context())

  assert res['statusCode'] == HTTPStatus.OK
  assert res['isBase64Encoded']
  assert res['headers']['content-type'] == 'image/jpeg'
  assert Image.new_from_buffer(base64.b64decode(res['body']), '').get('width') == 20
  assert dest.accessed('put') == ['20x70/a/cat.png']


def test_handler_invalid_path(env: XParams) -> None:
  ImgOptimizer.instances[env] = ImgOptimizer(
      log=logging.getLogger(__name__),
      source=MemoryStore(SOURCE_BUCKET),
      dest=MemoryStore(DEST_BUCKET))

  res = optimizer_lambda_handler({
      'version': '2.0',
      'rawPath': '/a/cat.png',
      'headers': {},
  }, lambda_context())

  assert res['statusCode'] == HTTPStatus.BAD_REQUEST
  assert res['body'] == 'Invalid image path format'


def test_handler_not_configured(monkeypatch: pytest.MonkeyPatch) -> None:
  monkeypatch.delenv('SOURCE_BUCKET', raising=False)
  monkeypatch.delenv('DEST_BUCKET', raising=False)

  res = optimizer_lambda_handler({
      'version': '2.0',
      'rawPath': '/300x60/cat.png',
      'headers': {},
  }, lambda_context())

  assert res['statusCode'] == HTTPStatus.INTERNAL_SERVER_ERROR
  assert res['body'] == 'Image optimizer is not configured'
