from typing import Any, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException

from examlab.core.interfaces import (
    InvalidRunTransition, ProfileNotFoundError, ProfileNotReadyError, RunNotFoundError
)
from examlab.core.service import BenchmarkService
from examlab.models.run import ActiveRunState, BenchmarkRun, LaunchRunRequest, RunQueue
from examlab.web.dependencies import get_service

router = APIRouter()


@router.post("")
async def launch_run(request: LaunchRunRequest, background_tasks: BackgroundTasks,
                     service: BenchmarkService = Depends(get_service)) -> BenchmarkRun:
    """Создать прогон и поставить его в очередь"""
    try:
        run = service.launch_run(request.profile_id, request.question_ids, request.label, request.filters)
    except ProfileNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ProfileNotReadyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    background_tasks.add_task(service.process_queue)
    return run


@router.get("")
async def list_runs(service: BenchmarkService = Depends(get_service)) -> List[BenchmarkRun]:
    return service.list_runs()


@router.get("/queue")
async def get_queue(service: BenchmarkService = Depends(get_service)) -> RunQueue:
    return service.queue()


@router.get("/active")
async def get_active_run(service: BenchmarkService = Depends(get_service)) -> Optional[ActiveRunState]:
    """Живое состояние выполняющегося (или последнего) прогона"""
    return service.active_run()


@router.get("/overview")
async def get_overview(service: BenchmarkService = Depends(get_service)) -> Dict[str, Any]:
    return service.dashboard_overview()


@router.get("/{run_id}")
async def get_run(run_id: str, service: BenchmarkService = Depends(get_service)) -> BenchmarkRun:
    try:
        return service.get_run(run_id)
    except RunNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/{run_id}/cancel")
async def cancel_run(run_id: str, service: BenchmarkService = Depends(get_service)) -> BenchmarkRun:
    try:
        return service.cancel_run(run_id)
    except RunNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidRunTransition as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.delete("/{run_id}")
async def delete_run(run_id: str, service: BenchmarkService = Depends(get_service)):
    try:
        service.delete_run(run_id)
    except RunNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"message": f"Run {run_id} deleted"}
