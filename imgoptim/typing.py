from typing import Literal, NewType, NotRequired, TypedDict

HttpPath = NewType('HttpPath', str)
S3Key = NewType('S3Key', str)


class QueryValue(TypedDict):
  value: str
  multiValue: NotRequired[list['QueryValue']]


class HeaderValue(TypedDict):
  value: str


class ViewerRequest(TypedDict):
  method: str
  uri: HttpPath
  querystring: dict[str, QueryValue]
  headers: dict[str, HeaderValue]


class ViewerRequestEvent(TypedDict):
  version: NotRequired[str]
  request: ViewerRequest


class HttpContext(TypedDict):
  method: str
  path: str
  sourceIp: str


class RequestContext(TypedDict):
  domainName: str
  http: HttpContext
  requestId: str


class FunctionUrlEvent(TypedDict):
  version: NotRequired[Literal['2.0']]
  rawPath: NotRequired[str]
  path: NotRequired[str]
  rawQueryString: NotRequired[str]
  headers: NotRequired[dict[str, str]]
  queryStringParameters: NotRequired[dict[str, str]]
  requestContext: NotRequired[RequestContext]
  isBase64Encoded: NotRequired[bool]


class FunctionUrlResponse(TypedDict):
  statusCode: int
  headers: NotRequired[dict[str, str]]
  body: str
  isBase64Encoded: NotRequired[bool]
