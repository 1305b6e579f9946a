from aws_lambda_powertools.utilities.typing import LambdaContext

from imgoptim.optimizer import index as optimizer
from imgoptim.typing import FunctionUrlEvent, FunctionUrlResponse


def optimizer_lambda_handler(
    event: FunctionUrlEvent,
    _: LambdaContext,
) -> FunctionUrlResponse:
  # # For debugging
  # print('event:')
  # print(json.dumps(event))

  ret = optimizer.lambda_main(event)

  # # For debugging
  # print('return:')
  # print(json.dumps({**ret, 'body': '...'}))

  return ret
