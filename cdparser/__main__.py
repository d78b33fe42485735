import asyncio
import sys

from hypercorn.asyncio import serve
from hypercorn.config import Config

import cdparser.api
import cdparser.logstreams

if __name__ == "__main__":  # codecov-skip
    cfg, err = cdparser.api.compile_server_config()
    if err:
        print("missing environment variables")
        sys.exit(1)

    try:
        cdparser.logstreams.setup(cfg.loglevel)
        hypercorn_cfg = Config()
        hypercorn_cfg.bind = [f"{cfg.host}:{cfg.port}"]
        asyncio.run(serve(cdparser.api.make_app(), hypercorn_cfg))  # type: ignore
    except KeyboardInterrupt:
        print("User abort")
        sys.exit(1)
