import asyncio

from .runtime import serve


def main() -> None:
    asyncio.run(serve())


if __name__ == "__main__":
    main()
