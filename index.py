from aws_lambda_powertools.utilities.typing import LambdaContext

from originrouter.originrequest import index as originrequest
from originrouter.typing import OriginRequestEvent, Request, ResponseResult


def origin_request_lambda_handler(
    event: OriginRequestEvent,
    _: LambdaContext,
) -> Request | ResponseResult:
  return originrequest.lambda_main(event)
