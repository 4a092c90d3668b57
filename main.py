"""
Entry point for the insight-dedup service.

Run with:
    uvicorn insight_dedup.api.main:app --reload --port 8100
    python main.py
"""
import uvicorn

from config import get_settings

settings = get_settings()

if __name__ == "__main__":
    uvicorn.run(
        "insight_dedup.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
