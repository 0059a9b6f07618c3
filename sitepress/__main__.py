import uvicorn

from .config.production import get_config


def main() -> None:
    config = get_config()
    uvicorn.run("sitepress.main:app", host="0.0.0.0", port=config.system.service_port)


if __name__ == "__main__":
    main()
