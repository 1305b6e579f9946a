from http import HTTPStatus


class OptimizeError(Exception):
  status: HTTPStatus = HTTPStatus.INTERNAL_SERVER_ERROR
  body: str = 'Internal error'


class InvalidKeyFormat(OptimizeError):
  status = HTTPStatus.BAD_REQUEST
  body = 'Invalid image path format'


class SourceUnavailable(OptimizeError):
  body = 'Image optimization failed'


class TransformFailed(OptimizeError):
  body = 'Image optimization failed'


class StoreProbeFailure(OptimizeError):
  status = HTTPStatus.SERVICE_UNAVAILABLE
  body = 'Optimized image store unavailable'


class AuthorizationFailure(OptimizeError):
  status = HTTPStatus.FORBIDDEN
  body = 'Access denied'
