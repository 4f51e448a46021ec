from litestar.datastructures import State
from pydantic_ai import Agent
from realitypatch.accountability.service import SessionPolicy
from realitypatch.database.manager import RecordStore


async def get_record_store(state: State) -> RecordStore:
    return state.record_store


async def get_assistant(state: State) -> Agent[None, str]:
    return state.assistant


async def get_policy(state: State) -> SessionPolicy:
    return state.policy
