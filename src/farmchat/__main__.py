"""Main entry point for running the farmchat suggestion backend."""

import asyncio
import contextlib
import logging

import farmchat.entrypoint
from farmchat.core.error_handling import (
    install_global_exception_hooks,
    register_asyncio_exception_handler,
)


def main() -> None:
    """Run the application entry point."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s: %(message)s",
    )
    install_global_exception_hooks()
    with asyncio.Runner() as runner:
        register_asyncio_exception_handler(runner.get_loop())
        try:
            runner.run(farmchat.entrypoint.main())
        except KeyboardInterrupt:
            with contextlib.suppress(KeyboardInterrupt):
                runner.run(farmchat.entrypoint.shutdown())


if __name__ == "__main__":
    main()
