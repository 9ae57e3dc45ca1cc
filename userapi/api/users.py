from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Response

from userapi.models.schemas import User, UserIn
from userapi.observability.operations import OperationRecorder, Outcome
from userapi.services.dependencies import get_operation_recorder, get_user_store
from userapi.services.user_store import UserNotFoundError, UserStore

router = APIRouter(tags=["users"])


@router.get("/users", response_model=list[User])
async def list_users(
    store: UserStore = Depends(get_user_store),
    recorder: OperationRecorder = Depends(get_operation_recorder),
) -> list[User]:
    try:
        users = store.list_users()
    except Exception:
        recorder.record_operation("list", Outcome.ERROR)
        raise
    recorder.record_operation("list", Outcome.SUCCESS)
    return users


@router.post("/users", response_model=User, status_code=201)
async def create_user(
    payload: UserIn,
    store: UserStore = Depends(get_user_store),
    recorder: OperationRecorder = Depends(get_operation_recorder),
) -> User:
    try:
        user = store.create_user(payload)
    except Exception:
        recorder.record_operation("create", Outcome.ERROR)
        raise
    recorder.record_operation("create", Outcome.SUCCESS)
    return user


@router.put("/users/{user_id}", response_model=User)
async def update_user(
    user_id: int,
    payload: UserIn,
    store: UserStore = Depends(get_user_store),
    recorder: OperationRecorder = Depends(get_operation_recorder),
) -> User:
    try:
        user = store.update_user(user_id, payload)
    except UserNotFoundError as exc:
        recorder.record_operation("update", Outcome.NOT_FOUND)
        raise HTTPException(status_code=404, detail="User not found") from exc
    except Exception:
        recorder.record_operation("update", Outcome.ERROR)
        raise
    recorder.record_operation("update", Outcome.SUCCESS)
    return user


@router.delete("/users/{user_id}", status_code=204, response_class=Response)
async def delete_user(
    user_id: int,
    store: UserStore = Depends(get_user_store),
    recorder: OperationRecorder = Depends(get_operation_recorder),
) -> Response:
    try:
        store.delete_user(user_id)
    except UserNotFoundError as exc:
        recorder.record_operation("delete", Outcome.NOT_FOUND)
        raise HTTPException(status_code=404, detail="User not found") from exc
    except Exception:
        recorder.record_operation("delete", Outcome.ERROR)
        raise
    recorder.record_operation("delete", Outcome.SUCCESS)
    return Response(status_code=204)
