import copy
import dataclasses
import datetime
import json
import logging
import posixpath
import re
import sys
import traceback
from enum import Enum
from http import HTTPStatus
from logging import Logger
from typing import Any, Optional, cast
from urllib import parse

from pythonjsonlogger.jsonlogger import JsonFormatter

import originrouter
from originrouter.typing import (
    CustomOriginDict,
    Headers,
    HttpPath,
    OriginRequestEvent,
    Request,
    ResponseResult,
    S3OriginDict
)

ORIGIN_REQUEST = 'origin-request'

HOST = 'host'
BASE_HOST = 'x-base-host'
ORIGIN_PREFIX = 'x-origin-'
TARGET_DOMAIN = 'x-target-domain'
HOST_MAPPING = 'x-env-host-mapping'
DEFAULT_SUBDOMAIN = 'x-env-default-subdomain'

APEX_SUBDOMAIN = 'www'

CUSTOM_ORIGIN_PORT = 443
CUSTOM_ORIGIN_PROTOCOL = 'https'
CUSTOM_ORIGIN_SSL_PROTOCOLS = ('TLSv1', 'TLSv1.1', 'TLSv1.2')
CUSTOM_ORIGIN_READ_TIMEOUT = 30
CUSTOM_ORIGIN_KEEPALIVE_TIMEOUT = 5

path_template_re = re.compile(r'/\{[^}]*\}')


class MyJsonFormatter(JsonFormatter):

  def __init__(self) -> None:
    super().__init__(json_ensure_ascii=False)

  def add_fields(self, log_record: Any, record: Any, message_dict: Any) -> None:
    log_record['_ts'] = datetime.datetime.now(datetime.UTC).strftime('%Y-%m-%dT%H:%M:%S.%fZ')

    if log_record.get('level'):
      log_record['level'] = log_record['level'].upper()
    else:
      log_record['level'] = record.levelname

    log_record['version'] = originrouter.version

    super().add_fields(log_record, record, message_dict)


def init_logging() -> Logger:
  # https://stackoverflow.com/a/11548754/1160341
  logger = logging.getLogger()
  logger.setLevel(logging.DEBUG)
  for h in logger.handlers:
    logger.removeHandler(h)

  log = logging.getLogger(__name__)
  log_handler = logging.StreamHandler()
  log_handler.setFormatter(MyJsonFormatter())
  log_handler.setLevel(logging.DEBUG)
  log_handler.setStream(sys.stderr)
  log.addHandler(log_handler)
  log.propagate = False

  return log


logger = init_logging()


def json_dump(obj: Any) -> str:
  return json.dumps(obj, separators=(',', ':'), sort_keys=True)


class ErrorKind(Enum):
  INVALID_EVENT_KIND = 'Invalid Event Type'
  INVALID_ORIGIN_TYPE = 'Invalid Origin Type'
  UNKNOWN_TENANT_ORIGIN = 'Unknown Tenant Origin'
  MALFORMED_ORIGIN_URL = 'Malformed Origin URL'
  INVALID_HOST_MAPPING = 'Invalid Host Mapping'
  INTERNAL_ERROR = 'Server Error'

  @property
  def description(self) -> str:
    return self.value


class RoutingError(Exception):
  kind = ErrorKind.INTERNAL_ERROR


class MissingHeader(RoutingError):
  pass


class UnknownTenantOrigin(RoutingError):
  kind = ErrorKind.UNKNOWN_TENANT_ORIGIN


class MalformedOriginURL(RoutingError):
  kind = ErrorKind.MALFORMED_ORIGIN_URL


class InvalidHostMapping(RoutingError):
  kind = ErrorKind.INVALID_HOST_MAPPING


def find_header(headers: Headers, name: str) -> Optional[str]:
  name = name.lower()
  for key, records in headers.items():
    if key.lower() == name and 0 < len(records):
      return records[0]['value']
  return None


def get_header(headers: Headers, name: str) -> str:
  value = find_header(headers, name)
  if value is None:
    raise MissingHeader(f'required header not found: {name}')
  return value


def get_header_or(headers: Headers, name: str, default: str = '') -> str:
  value = find_header(headers, name)
  return default if value is None else value


def set_header(headers: Headers, name: str, value: str) -> None:
  for key, records in headers.items():
    if key.lower() == name and 0 < len(records):
      records[0]['value'] = value
      return
  headers[name] = [{'value': value}]


class HostMapping(Enum):
  LOOSE = 0
  STRICT = 1


@dataclasses.dataclass(eq=True, frozen=True)
class RouterParams:
  base_host: str
  host_mapping: HostMapping = HostMapping.LOOSE
  default_subdomain: str = APEX_SUBDOMAIN

  @classmethod
  def from_headers(cls, headers: Headers) -> 'RouterParams':
    try:
      host_mapping = HostMapping[get_header_or(headers, HOST_MAPPING, 'Loose').upper()]
    except KeyError:
      raise ValueError(f'invalid "{HOST_MAPPING}": {get_header(headers, HOST_MAPPING)}')

    return cls(
        base_host=get_header(headers, BASE_HOST),
        host_mapping=host_mapping,
        default_subdomain=get_header_or(headers, DEFAULT_SUBDOMAIN, APEX_SUBDOMAIN))


@dataclasses.dataclass(frozen=True)
class StorageOrigin:
  domain_name: str
  path: str
  custom_headers: Headers
  # authMethod, region and timeouts are forwarded untouched.
  passthrough: dict[str, Any] = dataclasses.field(default_factory=dict)

  @classmethod
  def from_dict(cls, s3: S3OriginDict) -> 'StorageOrigin':
    passthrough = {
        k: v for k, v in s3.items() if k not in ('domainName', 'path', 'customHeaders')
    }
    return cls(
        domain_name=s3.get('domainName', ''),
        path=s3.get('path', ''),
        custom_headers=copy.deepcopy(s3.get('customHeaders', {})),
        passthrough=copy.deepcopy(passthrough))

  def to_dict(self) -> S3OriginDict:
    return cast(
        S3OriginDict, {
            **copy.deepcopy(self.passthrough),
            'customHeaders': copy.deepcopy(self.custom_headers),
            'domainName': self.domain_name,
            'path': self.path,
        })


@dataclasses.dataclass(frozen=True)
class CustomOrigin:
  domain_name: str
  path: str
  port: int
  protocol: str
  read_timeout: int
  keepalive_timeout: int
  ssl_protocols: tuple[str, ...]
  custom_headers: Headers

  @classmethod
  def from_dict(cls, custom: CustomOriginDict) -> 'CustomOrigin':
    return cls(
        domain_name=custom.get('domainName', ''),
        path=custom.get('path', ''),
        port=custom.get('port', CUSTOM_ORIGIN_PORT),
        protocol=custom.get('protocol', CUSTOM_ORIGIN_PROTOCOL),
        read_timeout=custom.get('readTimeout', CUSTOM_ORIGIN_READ_TIMEOUT),
        keepalive_timeout=custom.get('keepaliveTimeout', CUSTOM_ORIGIN_KEEPALIVE_TIMEOUT),
        ssl_protocols=tuple(custom.get('sslProtocols', [])),
        custom_headers=copy.deepcopy(custom.get('customHeaders', {})))

  def to_dict(self) -> CustomOriginDict:
    return cast(
        CustomOriginDict, {
            'customHeaders': copy.deepcopy(self.custom_headers),
            'domainName': self.domain_name,
            'keepaliveTimeout': self.keepalive_timeout,
            'path': self.path,
            'port': self.port,
            'protocol': self.protocol,
            'readTimeout': self.read_timeout,
            'sslProtocols': list(self.ssl_protocols),
        })


Origin = StorageOrigin | CustomOrigin


@dataclasses.dataclass(frozen=True)
class RequestContext:
  event_type: str
  host: Optional[str]
  uri: HttpPath
  headers: Headers
  # None unless exactly one origin kind is present.
  origin: Optional[Origin]
  request: Request
  event: OriginRequestEvent

  @classmethod
  def from_event(cls, event: OriginRequestEvent) -> 'RequestContext':
    event = copy.deepcopy(event)
    cf = event['Records'][0]['cf']
    req = cf['request']
    headers = req.get('headers', {})
    origin_dict = req.get('origin', {})

    origin: Optional[Origin] = None
    match ('s3' in origin_dict, 'custom' in origin_dict):
      case (True, False):
        origin = StorageOrigin.from_dict(origin_dict['s3'])
      case (False, True):
        origin = CustomOrigin.from_dict(origin_dict['custom'])

    return cls(
        event_type=cf['config'].get('eventType', ''),
        host=find_header(headers, HOST),
        uri=req.get('uri', HttpPath('')),
        headers=copy.deepcopy(headers),
        origin=origin,
        request=copy.deepcopy(req),
        event=event)

  def with_origin(self, origin: Origin) -> 'RequestContext':
    if self.host is None:
      raise MissingHeader(f'required header not found: {HOST}')

    headers = copy.deepcopy(self.headers)
    set_header(headers, HOST, origin.domain_name)
    headers[TARGET_DOMAIN] = [{'value': self.host}]

    return dataclasses.replace(self, headers=headers, origin=origin)

  def to_request(self) -> Request:
    req = copy.deepcopy(self.request)
    req['uri'] = self.uri
    req['headers'] = copy.deepcopy(self.headers)

    # The whole origin record is replaced so that only one kind survives.
    match self.origin:
      case StorageOrigin() as s3:
        req['origin'] = {'s3': s3.to_dict()}
      case CustomOrigin() as custom:
        req['origin'] = {'custom': custom.to_dict()}
      case None:
        pass

    return req


@dataclasses.dataclass(frozen=True)
class Rewritten:
  context: RequestContext
  reason: str


@dataclasses.dataclass(frozen=True)
class Failure:
  kind: ErrorKind
  description: str
  body: Optional[str] = None
  status: int = HTTPStatus.INTERNAL_SERVER_ERROR

  def to_response(self) -> ResponseResult:
    response: ResponseResult = {
        'status': str(int(self.status)),
        'statusDescription': self.description,
    }

    if self.body is not None:
      response['body'] = self.body

    return response


RoutingOutcome = Rewritten | Failure


def derive_subdomain(target: str, params: RouterParams) -> str:
  base = params.base_host

  if params.host_mapping == HostMapping.STRICT:
    t, b = target.lower(), base.lower()
    if t != b and not t.endswith(f'.{b}'):
      raise InvalidHostMapping(f'host "{target}" is not under "{base}"')

  # Loose mapping assumes the host ends with ".<base>" without checking.
  diff = len(target) - len(base)
  if 0 < diff:
    return target[:diff - 1]

  return params.default_subdomain


def join_storage_path(path: str, subdomain: str) -> str:
  return posixpath.join(path, subdomain).rstrip('/')


def parse_origin_url(endpoint: str) -> tuple[str, int, str]:
  stripped = path_template_re.sub('', endpoint)
  try:
    url = parse.urlsplit(stripped)
    port = url.port
  except ValueError as e:
    raise MalformedOriginURL(f'invalid origin url: {endpoint}') from e

  if url.scheme == '' or url.hostname is None or url.hostname == '':
    raise MalformedOriginURL(f'origin url is not absolute: {endpoint}')

  return (url.hostname, CUSTOM_ORIGIN_PORT if port is None else port, url.path)


def resolve_custom_origin(source: CustomOrigin, subdomain: str) -> CustomOrigin:
  name = f'{ORIGIN_PREFIX}{subdomain}'
  endpoint = find_header(source.custom_headers, name)
  if endpoint is None:
    raise UnknownTenantOrigin(f'no origin configured for tenant "{subdomain}": {name}')

  domain_name, port, path = parse_origin_url(endpoint)
  # The last path segment is the request placeholder and is dropped.
  parent, _, _ = path.rpartition('/')

  return CustomOrigin(
      domain_name=domain_name,
      path=parent,
      port=port,
      protocol=CUSTOM_ORIGIN_PROTOCOL,
      read_timeout=CUSTOM_ORIGIN_READ_TIMEOUT,
      keepalive_timeout=CUSTOM_ORIGIN_KEEPALIVE_TIMEOUT,
      ssl_protocols=CUSTOM_ORIGIN_SSL_PROTOCOLS,
      custom_headers=copy.deepcopy(source.custom_headers))


class OriginRouter:

  def __init__(self, log: Logger):
    self.log = log

  def log_info(self, message: str, context: Any) -> None:
    self.log.info({
        'message': message,
        'context': context,
    })

  def log_error(self, message: str, context: Any) -> None:
    self.log.error({
        'message': message,
        'context': context,
    })

  def reject(self, kind: ErrorKind) -> Failure:
    failure = Failure(kind=kind, description=kind.description)
    self.log_error(kind.description, failure.to_response())
    return failure

  def fatal(self, kind: ErrorKind, e: Exception, event: OriginRequestEvent) -> Failure:
    diagnostic = {
        'error': ''.join(traceback.format_exception(e)).rstrip('\n').split('\n'),
        'event': event,
    }
    self.log_error('Fatal Error Encountered', diagnostic)
    return Failure(kind=kind, description=kind.description, body=json_dump(diagnostic))

  def rewrite(self, ctx: RequestContext, origin: Origin) -> Rewritten:
    if ctx.host is None:
      raise MissingHeader(f'required header not found: {HOST}')

    params = RouterParams.from_headers(origin.custom_headers)
    subdomain = derive_subdomain(ctx.host, params)

    match origin:
      case StorageOrigin():
        path = join_storage_path(origin.path, subdomain)
        self.log_info('Updating the S3 Origin Path', {
            'subdomain': subdomain,
            'path': path,
        })
        return Rewritten(
            context=ctx.with_origin(dataclasses.replace(origin, path=path)), reason='s3 path')
      case CustomOrigin():
        resolved = resolve_custom_origin(origin, subdomain)
        self.log_info('Updating Custom Origin Request', {
            'subdomain': subdomain,
            'origin': resolved.to_dict(),
        })
        return Rewritten(context=ctx.with_origin(resolved), reason='custom origin')
      case _:
        raise Exception('system error')

  def route(self, ctx: RequestContext) -> RoutingOutcome:
    if ctx.event_type.lower() != ORIGIN_REQUEST:
      return self.reject(ErrorKind.INVALID_EVENT_KIND)

    if ctx.origin is None:
      return self.reject(ErrorKind.INVALID_ORIGIN_TYPE)

    try:
      return self.rewrite(ctx, ctx.origin)
    except RoutingError as e:
      return self.fatal(e.kind, e, ctx.event)
    except Exception as e:
      return self.fatal(ErrorKind.INTERNAL_ERROR, e, ctx.event)

  def route_event(self, event: OriginRequestEvent) -> RoutingOutcome:
    self.log_info('Received Origin Request Event', event)

    try:
      ctx = RequestContext.from_event(event)
    except Exception as e:
      return self.fatal(ErrorKind.INTERNAL_ERROR, e, event)

    return self.route(ctx)


def lambda_main(event: OriginRequestEvent, log: Logger = logger) -> Request | ResponseResult:
  router = OriginRouter(log)

  match router.route_event(event):
    case Rewritten() as rewritten:
      req = rewritten.context.to_request()
      router.log_info('Responding With Request', req)
      return req
    case Failure() as failure:
      return failure.to_response()
    case _:
      raise Exception('system error')
