from datetime import datetime
from typing import Any, Optional

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse


def success(data: Optional[Any] = None, message: str = "Success") -> dict:
    """Success envelope. Decimals come out as JSON numbers."""
    return jsonable_encoder({"success": True, "message": message, "data": data, "errors": None})


def failure(status_code: int, message: str, errors=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(
            {
                "success": False,
                "message": message,
                "data": None,
                "errors": errors or [],
                "timestamp": f"{datetime.utcnow().isoformat()}Z",
            }
        ),
    )
