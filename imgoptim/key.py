import dataclasses
import re
from typing import Optional

from imgoptim.errors import InvalidKeyFormat
from imgoptim.typing import S3Key

DEFAULT_WIDTH = 300
DEFAULT_QUALITY = 60
MAX_QUALITY = 100

canonical_key_re = re.compile(r'(\d+)x(\d+)/(.+)')


def strip_leading_slashes(path: str) -> str:
  return path.lstrip('/')


def parse_positive_int(s: Optional[str], upper: Optional[int] = None) -> Optional[int]:
  """Returns the value of a decimal string, or None unless it is in 1..upper."""
  if s is None or not s.isascii() or not s.isdigit():
    return None

  n = int(s)
  if n <= 0:
    return None
  if upper is not None and upper < n:
    return None

  return n


@dataclasses.dataclass(eq=True, frozen=True)
class CanonicalKey:
  """Identifies one variant: ``{width}x{quality}/{original_key}``."""
  width: int
  quality: int
  original_key: S3Key

  @classmethod
  def create(cls, width: int, quality: int, original_key: str) -> 'CanonicalKey':
    if width <= 0 or not 0 < quality <= MAX_QUALITY:
      raise InvalidKeyFormat(f'width: {width}, quality: {quality}')
    if original_key == '' or original_key.startswith('/'):
      raise InvalidKeyFormat(f'original key: {original_key!r}')

    return cls(width, quality, S3Key(original_key))

  @classmethod
  def parse(cls, path: str) -> 'CanonicalKey':
    m = canonical_key_re.fullmatch(strip_leading_slashes(path))
    if m is None:
      raise InvalidKeyFormat(f'path: {path!r}')

    width = parse_positive_int(m[1])
    quality = parse_positive_int(m[2], MAX_QUALITY)
    if width is None or quality is None:
      raise InvalidKeyFormat(f'path: {path!r}')

    return cls.create(width, quality, m[3])

  @property
  def prefix(self) -> str:
    return f'{self.width}x{self.quality}'

  def to_key(self) -> S3Key:
    return S3Key(f'{self.prefix}/{self.original_key}')

  def __str__(self) -> str:
    return self.to_key()
