from .kafka import BROKER, AIOKafkaConsumerMock, AIOKafkaProducerMock, ChaosConfig, enable_chaos, reset_broker
from .setup import setup_env
from .util import dbg, wait_until

__all__ = [
    "BROKER",
    "AIOKafkaConsumerMock",
    "AIOKafkaProducerMock",
    "ChaosConfig",
    "dbg",
    "enable_chaos",
    "reset_broker",
    "setup_env",
    "wait_until",
]
