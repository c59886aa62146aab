"""
Run the decision service: ``python -m rategate``.

Host and port come from RATEGATE_HOST / RATEGATE_PORT; everything else from
the ``RATEGATE_*`` variables read by ``GateConfig.from_env``.
"""

import logging
import os

import uvicorn


def main() -> None:
    logging.basicConfig(
        level=os.getenv("RATEGATE_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "rategate.api:create_default_app",
        factory=True,
        host=os.getenv("RATEGATE_HOST", "0.0.0.0"),
        port=int(os.getenv("RATEGATE_PORT", "8000")),
    )


if __name__ == "__main__":
    main()
