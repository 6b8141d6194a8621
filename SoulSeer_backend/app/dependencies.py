from fastapi import Request

from app.security import verify_request_user
from app.services.ledger import BalanceLedger
from app.services.messaging import MessagingService
from app.services.metering import MeteringEngine


def current_user_id(request: Request) -> str:
    return verify_request_user(request)


def get_engine(request: Request) -> MeteringEngine:
    return request.app.state.engine


def get_ledger(request: Request) -> BalanceLedger:
    return request.app.state.ledger


def get_messaging(request: Request) -> MessagingService:
    return request.app.state.messaging


def get_session_factory(request: Request):
    return request.app.state.session_factory
