#!/usr/bin/env python3
"""
启动 API 服务（带 tracing pipeline）

用法:
  python scripts/run_api.py
  python scripts/run_api.py --port 8001 --host 0.0.0.0

配置见 config/routetrace_config.json，或用环境变量覆盖，如:
  OPENTELEMETRY__SAMPLING__RATIO=0.1 python scripts/run_api.py
"""

import argparse
import sys
from pathlib import Path

# 项目根目录加入 path
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def main() -> None:
    from config.settings import settings
    parser = argparse.ArgumentParser(description="Run routetrace demo API")
    parser.add_argument("--host", default=settings.api.host, help="Bind host")
    parser.add_argument("--port", type=int, default=settings.api.port, help="Bind port")
    args = parser.parse_args()

    # 先按配置文件的 logging 段初始化，之后导入的模块拿到的 logger 都带这套 handler
    from routetrace.log import init_logging
    init_logging(settings.logging)

    import uvicorn
    from routetrace.api.server import create_app

    # 配置非法时 create_app 直接抛 ConfigurationError，服务不会启动
    uvicorn.run(create_app(settings), host=args.host, port=args.port)


if __name__ == "__main__":
    main()
