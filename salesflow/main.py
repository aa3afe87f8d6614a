"""ASGI entry point: ``uvicorn salesflow.main:app``."""

from .config import load_config
from .factory import create_app

config = load_config()
app = create_app(config)


def main():
    """Run the API server with settings from the environment."""
    import uvicorn
    uvicorn.run("salesflow.main:app", **config.get_uvicorn_config())


if __name__ == "__main__":
    main()
