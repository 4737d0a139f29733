from persona_rooms.pipeline.activation import (  # noqa: F401
    BROADCAST_PROBABILITY,
    MENTION_PROBABILITY,
    Candidate,
    UnableToRespond,
    first_round_candidates,
    next_round_candidates,
    shuffle_avoid_first,
)
from persona_rooms.pipeline.core import (  # noqa: F401
    ExchangeContext,
    ExchangeResult,
    TurnFailure,
    run_exchange,
    send_user_message,
)
