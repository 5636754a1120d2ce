import uvicorn

from sp_validator.core.config import settings
from sp_validator.main import app

if __name__ == "__main__":
    uvicorn.run(
        "sp_validator.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.RELOAD,
        log_level=settings.LOG_LEVEL.lower(),
    )
