"""CloudFront signed URLs.

Signing is what an operator does offline to hand out a time-bounded URL;
verification is what the edge does for every request on a protected
behavior. Both sides agree on the canned policy document, RSA-SHA1 with
PKCS#1 v1.5 padding, and CloudFront's URL-safe base64 alphabet.
"""
import base64
import binascii
import dataclasses
import datetime
import ipaddress
import json
import math
import re
from typing import Any, Callable, Mapping, Optional
from urllib import parse

from botocore.signers import CloudFrontSigner
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from dateutil import tz

from imgoptim.errors import AuthorizationFailure

EXPIRES_PARAM = 'Expires'
POLICY_PARAM = 'Policy'
SIGNATURE_PARAM = 'Signature'
KEY_PAIR_ID_PARAM = 'Key-Pair-Id'
SIGNING_PARAMS = frozenset([EXPIRES_PARAM, POLICY_PARAM, SIGNATURE_PARAM, KEY_PAIR_ID_PARAM])

private_key_re = re.compile(rb'BEGIN (RSA )?PRIVATE KEY')
scheme_re = re.compile(r'^https?://', re.IGNORECASE)

b64_to_url = str.maketrans({'+': '-', '=': '_', '/': '~'})
url_to_b64 = str.maketrans({'-': '+', '_': '=', '~': '/'})


class SigningError(Exception):
  pass


def get_now() -> datetime.datetime:
  # Return timezone-aware datetime
  return datetime.datetime.now(tz=tz.tzutc())


def url_b64encode(data: bytes) -> str:
  return base64.b64encode(data).decode().translate(b64_to_url)


def url_b64decode(s: str) -> bytes:
  return base64.b64decode(s.translate(url_to_b64), validate=True)


def canned_policy(resource: str, date_less_than: int) -> bytes:
  # Same document botocore signs for a canned policy.
  policy = {
      'Statement': [{
          'Resource': resource,
          'Condition': {
              'DateLessThan': {
                  'AWS:EpochTime': date_less_than,
              },
          },
      }],
  }
  return json.dumps(policy, separators=(',', ':')).encode()


def load_private_key(pem: bytes) -> rsa.RSAPrivateKey:
  if private_key_re.search(pem) is None:
    raise SigningError("File doesn't look like a PEM private key")

  try:
    key = serialization.load_pem_private_key(pem, password=None)
  except (ValueError, TypeError, UnsupportedAlgorithm) as e:
    raise SigningError(f'cannot load private key: {e}') from e

  if not isinstance(key, rsa.RSAPrivateKey):
    raise SigningError('private key is not an RSA key')
  return key


def load_public_key(pem: bytes) -> rsa.RSAPublicKey:
  key = serialization.load_pem_public_key(pem)
  if not isinstance(key, rsa.RSAPublicKey):
    raise ValueError('public key is not an RSA key')
  return key


def rsa_signer(key: rsa.RSAPrivateKey) -> Callable[[bytes], bytes]:

  def sign(message: bytes) -> bytes:
    return key.sign(message, padding.PKCS1v15(), hashes.SHA1())

  return sign


def ensure_https_domain(domain: str) -> str:
  d = domain.strip()
  if scheme_re.match(d) is None:
    d = f'https://{d}'
  return d.rstrip('/')


def sign_url(
    private_key_pem: bytes,
    key_pair_id: str,
    domain: str,
    object_key: str,
    duration: float,
    now: Optional[datetime.datetime] = None,
) -> str:
  if key_pair_id.strip() == '':
    raise SigningError('Key Pair ID is required')
  if domain.strip() == '':
    raise SigningError('domain is required')
  if object_key.strip() == '':
    raise SigningError('object key is required')
  if not math.isfinite(duration) or duration <= 0:
    raise SigningError('duration must be a positive number of seconds')

  key = load_private_key(private_key_pem)
  url = f'{ensure_https_domain(domain)}/{object_key.lstrip("/")}'
  # Policies carry whole epoch seconds; rounding down could expire the URL early.
  expires = math.ceil((now or get_now()).timestamp() + duration)
  date_less_than = datetime.datetime.fromtimestamp(expires, tz=tz.tzutc())

  signer = CloudFrontSigner(key_pair_id.strip(), rsa_signer(key))
  return signer.generate_presigned_url(url, date_less_than=date_less_than)


@dataclasses.dataclass(frozen=True)
class Credential:
  resource: str
  key_pair_id: str
  signature: bytes
  policy: bytes
  canned: bool


def split_signed_url(url: str) -> tuple[str, dict[str, str]]:
  """Separates the signing parameters from the URL that was signed."""
  parts = parse.urlsplit(url)
  kept: list[str] = []
  params: dict[str, str] = {}
  for item in parts.query.split('&') if parts.query else []:
    name, _, value = item.partition('=')
    if name in SIGNING_PARAMS:
      if name in params:
        raise AuthorizationFailure(f'duplicate {name}')
      params[name] = parse.unquote(value)
    else:
      kept.append(item)

  resource = parse.urlunsplit((parts.scheme, parts.netloc, parts.path, '&'.join(kept), ''))
  return resource, params


def parse_credential(url: str) -> Credential:
  resource, params = split_signed_url(url)

  if SIGNATURE_PARAM not in params or KEY_PAIR_ID_PARAM not in params:
    raise AuthorizationFailure('missing signature')

  try:
    signature = url_b64decode(params[SIGNATURE_PARAM])
  except (binascii.Error, ValueError) as e:
    raise AuthorizationFailure(f'malformed signature: {e}') from e

  if POLICY_PARAM in params:
    try:
      policy = url_b64decode(params[POLICY_PARAM])
    except (binascii.Error, ValueError) as e:
      raise AuthorizationFailure(f'malformed policy: {e}') from e
    return Credential(resource, params[KEY_PAIR_ID_PARAM], signature, policy, canned=False)

  if EXPIRES_PARAM not in params:
    raise AuthorizationFailure('missing expiry')

  expires = params[EXPIRES_PARAM]
  if not expires.isascii() or not expires.isdigit():
    raise AuthorizationFailure(f'malformed expiry: {expires!r}')

  return Credential(
      resource,
      params[KEY_PAIR_ID_PARAM],
      signature,
      canned_policy(resource, int(expires)),
      canned=True)


def resource_matches(pattern: str, resource: str) -> bool:
  regex = re.escape(pattern).replace(r'\*', '.*').replace(r'\?', '.')
  return re.fullmatch(regex, resource) is not None


def epoch_condition(condition: Mapping[str, Any], name: str) -> Optional[int]:
  if name not in condition:
    return None
  try:
    value = condition[name]['AWS:EpochTime']
  except (KeyError, TypeError) as e:
    raise AuthorizationFailure(f'malformed {name}') from e
  if not isinstance(value, int) or isinstance(value, bool):
    raise AuthorizationFailure(f'malformed {name}')
  return value


def check_policy(
    credential: Credential,
    now: datetime.datetime,
    client_ip: Optional[str],
) -> None:
  try:
    statement = json.loads(credential.policy)['Statement'][0]
    condition = statement['Condition']
    pattern = statement.get('Resource', '*')
  except (ValueError, KeyError, IndexError, TypeError) as e:
    raise AuthorizationFailure(f'malformed policy: {e}') from e

  if not isinstance(condition, dict) or not isinstance(pattern, str):
    raise AuthorizationFailure('malformed policy')

  if not resource_matches(pattern, credential.resource):
    raise AuthorizationFailure(f'policy does not cover {credential.resource}')

  date_less_than = epoch_condition(condition, 'DateLessThan')
  if date_less_than is None:
    raise AuthorizationFailure('policy has no DateLessThan')

  timestamp = now.timestamp()
  if date_less_than <= timestamp:
    raise AuthorizationFailure(f'expired at {date_less_than}')

  date_greater_than = epoch_condition(condition, 'DateGreaterThan')
  if date_greater_than is not None and timestamp <= date_greater_than:
    raise AuthorizationFailure(f'not valid before {date_greater_than}')

  if 'IpAddress' in condition:
    try:
      network = ipaddress.ip_network(condition['IpAddress']['AWS:SourceIp'], strict=False)
    except (KeyError, TypeError, ValueError) as e:
      raise AuthorizationFailure('malformed IpAddress') from e
    try:
      client = None if client_ip is None else ipaddress.ip_address(client_ip)
    except ValueError as e:
      raise AuthorizationFailure(f'malformed client ip: {client_ip!r}') from e
    if client is None or client not in network:
      raise AuthorizationFailure(f'client {client_ip} not in {network}')


class TrustedKeySet:
  """Public keys the edge accepts signatures from, by key pair ID."""

  def __init__(self, keys: Mapping[str, rsa.RSAPublicKey]):
    self.keys = dict(keys)

  @classmethod
  def from_pem(cls, keys: Mapping[str, bytes]) -> 'TrustedKeySet':
    return cls({key_pair_id: load_public_key(pem) for key_pair_id, pem in keys.items()})

  @classmethod
  def from_encoded(cls, key_pair_id: str, encoded: str) -> 'TrustedKeySet':
    """Builds a set from a base64 encoded PEM, the form it is kept in config."""
    return cls.from_pem({key_pair_id: base64.b64decode(encoded)})

  def verify(
      self,
      url: str,
      now: Optional[datetime.datetime] = None,
      client_ip: Optional[str] = None,
  ) -> Credential:
    credential = parse_credential(url)

    if credential.key_pair_id not in self.keys:
      raise AuthorizationFailure(f'untrusted key pair: {credential.key_pair_id}')

    try:
      self.keys[credential.key_pair_id].verify(
          credential.signature, credential.policy, padding.PKCS1v15(), hashes.SHA1())
    except InvalidSignature as e:
      raise AuthorizationFailure('signature does not verify') from e

    check_policy(credential, now or get_now(), client_ip)
    return credential
