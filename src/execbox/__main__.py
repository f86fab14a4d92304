import uvicorn

from .settings import load_settings


def main() -> None:
    s = load_settings()
    uvicorn.run("execbox.api:app", host=s.host, port=s.port, log_level=s.log_level.lower())


if __name__ == "__main__":
    main()
