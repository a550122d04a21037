#!/usr/bin/env python3
"""
omnisync API Startup Script

Starts the omnisync FastAPI server (platform connections, catalog, orders,
inventory, sync status and webhook ingestion).
"""

import sys
from pathlib import Path

import uvicorn


def main():
    """Start the omnisync API server."""
    print("🚀 Starting omnisync API Server...")
    print("📦 Features:")
    print("   ✅ Platform Connections (OAuth + WooCommerce keys)")
    print("   ✅ Product Catalog + Multi-Platform Publishing")
    print("   ✅ Order Import")
    print("   ✅ Inventory Sync + Oversell Guard")
    print("   ✅ Webhook Ingestion")
    print("")
    print("📖 Documentation will be available at:")
    print("   🌐 Swagger UI:  http://localhost:8000/docs")
    print("   📚 ReDoc:       http://localhost:8000/redoc")
    print("")

    env_file = Path(".env")
    if not env_file.exists():
        print("⚠️  WARNING: No .env file found!")
        print("   Run `python generate_keys.py` to create one from .env.template")
        print("   (JWT_SECRET and TOKEN_ENCRYPTION_KEY are required)")
        print("")

    try:
        uvicorn.run(
            "omnisync.main:app",
            host="0.0.0.0",
            port=8000,
            reload=True,
            reload_dirs=["omnisync"],
            log_level="info"
        )
    except KeyboardInterrupt:
        print("\n👋 Shutting down omnisync API server...")
    except Exception as e:
        print(f"❌ Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
