#!/usr/bin/env python3
"""
Ripoti Reporting Engine Entry Point

Starts the FastAPI server with the regulatory sheets loaded.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from core_reporting.api import run_server
from core_reporting.config import get_config


if __name__ == "__main__":
    cfg = get_config()
    print("📑 Starting Ripoti Reporting Engine...")
    print("🧮 Report cells recompute on every leaf change")
    print("⚖️  Cross-report validation active")
    print("💰 All amounts use Decimal precision")
    print(f"🌐 API available at: http://localhost:{cfg.api_port}")
    print(f"📚 Documentation at: http://localhost:{cfg.api_port}/docs")
    print()

    try:
        run_server(host=cfg.api_host, port=cfg.api_port, debug=False)
    except KeyboardInterrupt:
        print("\n👋 Shutting down Ripoti...")
    except Exception as e:
        print(f"❌ Error starting server: {e}")
        sys.exit(1)
