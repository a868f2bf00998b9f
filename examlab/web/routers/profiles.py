from typing import List

from fastapi import APIRouter, Depends, HTTPException

from examlab.core.interfaces import ProfileNotFoundError
from examlab.core.service import BenchmarkService
from examlab.models.profile import (
    DiagnosticsLevel, DiagnosticsResult, ModelProfile, ProfileCreateRequest, ProfileUpdateRequest
)
from examlab.web.dependencies import get_service

router = APIRouter()


@router.get("")
async def list_profiles(service: BenchmarkService = Depends(get_service)) -> List[ModelProfile]:
    """Получить все профили моделей"""
    return service.list_profiles()


@router.post("")
async def create_profile(request: ProfileCreateRequest,
                         service: BenchmarkService = Depends(get_service)) -> ModelProfile:
    """Создать профиль модели"""
    return service.create_profile(request)


@router.get("/{profile_id}")
async def get_profile(profile_id: str, service: BenchmarkService = Depends(get_service)) -> ModelProfile:
    try:
        return service.get_profile(profile_id)
    except ProfileNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.put("/{profile_id}")
async def update_profile(profile_id: str, request: ProfileUpdateRequest,
                         service: BenchmarkService = Depends(get_service)) -> ModelProfile:
    try:
        return service.update_profile(profile_id, request)
    except ProfileNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.delete("/{profile_id}")
async def delete_profile(profile_id: str, service: BenchmarkService = Depends(get_service)):
    try:
        service.delete_profile(profile_id)
    except ProfileNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"message": f"Profile {profile_id} deleted"}


@router.post("/{profile_id}/diagnostics/{level}")
def run_diagnostics(profile_id: str, level: DiagnosticsLevel,
                    service: BenchmarkService = Depends(get_service)) -> DiagnosticsResult:
    """Запустить диагностику HANDSHAKE или READINESS (блокирующий вызов к модели)"""
    try:
        return service.run_diagnostics(profile_id, level)
    except ProfileNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
