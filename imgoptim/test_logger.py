import io
import json
import logging

import imgoptim
from imgoptim.logger import MyJsonFormatter


def test_json_formatter() -> None:
  stream = io.StringIO()
  log = logging.getLogger('imgoptim.test_logger')
  log.setLevel(logging.DEBUG)
  log.propagate = False
  handler = logging.StreamHandler(stream)
  handler.setFormatter(MyJsonFormatter())
  log.addHandler(handler)

  try:
    log.warning({'message': 'probe failed', 'key': '200x70/猫.png'})
  finally:
    log.removeHandler(handler)

  line = stream.getvalue().strip()
  record = json.loads(line)
  assert record['message'] == 'probe failed'
  assert record['key'] == '200x70/猫.png'
  assert record['level'] == 'WARNING'
  assert record['version'] == imgoptim.version
  assert record['_ts'].endswith('Z')
  assert '猫' in line
