import uvicorn

from worker_agent.config import load_settings


def main() -> None:
    settings = load_settings()
    uvicorn.run(
        "worker_agent.api:app",
        host=settings.host,
        port=settings.port,
        reload=False,
        log_config=None,
    )


if __name__ == "__main__":
    main()
