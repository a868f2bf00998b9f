from fastapi import Request

from examlab.core.service import BenchmarkService


def get_service(request: Request) -> BenchmarkService:
    return request.app.state.service
