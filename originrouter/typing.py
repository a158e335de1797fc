from typing import Literal, NewType, NotRequired

from typing_extensions import ReadOnly, TypedDict

HttpPath = NewType('HttpPath', str)


class Header(TypedDict):
  key: NotRequired[ReadOnly[str]]
  value: str


Headers = dict[str, list[Header]]


class S3OriginDict(TypedDict):
  customHeaders: Headers
  domainName: str
  path: str
  readTimeout: NotRequired[int]
  responseCompletionTimeout: NotRequired[int]
  authMethod: NotRequired[Literal['origin-access-identity', 'none']]
  region: NotRequired[str]


class CustomOriginDict(TypedDict):
  customHeaders: Headers
  domainName: str
  path: str
  keepaliveTimeout: int
  port: int
  protocol: Literal['http', 'https']
  readTimeout: int
  responseCompletionTimeout: NotRequired[int]
  sslProtocols: list[Literal['TLSv1.2', 'TLSv1.1', 'TLSv1', 'SSLv3']]


class OriginDict(TypedDict):
  custom: NotRequired[CustomOriginDict]
  s3: NotRequired[S3OriginDict]


class Body(TypedDict):
  inputTruncated: ReadOnly[bool]
  action: Literal['read-only', 'replace']
  encoding: Literal['base64', 'text']
  data: str


class Request(TypedDict):
  method: ReadOnly[Literal['GET', 'HEAD', 'OPTIONS', 'TRACE', 'PUT', 'DELETE', 'POST', 'PATCH',
                           'CONNECT']]
  uri: HttpPath
  querystring: str
  headers: Headers
  clientIp: ReadOnly[str]
  body: NotRequired[Body]
  origin: OriginDict


class OriginRequestConfig(TypedDict):
  distributionDomainName: ReadOnly[str]
  distributionId: ReadOnly[str]
  eventType: ReadOnly[str]
  requestId: ReadOnly[str]


class OriginRequestRecord(TypedDict):
  config: ReadOnly[OriginRequestConfig]
  request: Request


class OriginRequestRecordContainer(TypedDict):
  cf: OriginRequestRecord


class OriginRequestEvent(TypedDict):
  Records: list[OriginRequestRecordContainer]


class ResponseResult(TypedDict):
  body: NotRequired[str]
  bodyEncoding: NotRequired[Literal['text', 'base64']]
  headers: NotRequired[Headers]
  status: str
  statusDescription: NotRequired[str]
