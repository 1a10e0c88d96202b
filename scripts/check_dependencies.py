"""
Check the runtime environment before starting the server:
installed libraries (with versions) and which providers are configured.
"""

import os
import sys
from importlib import import_module
from importlib.metadata import PackageNotFoundError, version

# (import name, distribution name, what it is used for)
REQUIRED = [
    ("fastapi", "fastapi", "HTTP API"),
    ("uvicorn", "uvicorn", "ASGI server"),
    ("httpx", "httpx", "Gemini and Grok REST calls"),
    ("pydantic", "pydantic", "models"),
    ("pydantic_settings", "pydantic-settings", "configuration"),
    ("dotenv", "python-dotenv", ".env loading"),
    ("numpy", "numpy", "risk distances"),
    ("tldextract", "tldextract", "news source domains"),
]
OPTIONAL = [
    ("redis", "redis", "shared snapshot cache"),
]
PROVIDER_KEYS = {
    "news search / photo verification (Gemini)": ("GOOGLE_API_KEY", "API_KEY"),
    "social search / second vote (Grok)": ("XAI_API_KEY",),
}


def _installed(module: str, dist: str) -> str | None:
    try:
        import_module(module)
    except ImportError:
        return None
    try:
        return version(dist)
    except PackageNotFoundError:
        return "unknown version"


def check_libraries() -> bool:
    ok = True
    for label, table in (("Required", REQUIRED), ("Optional", OPTIONAL)):
        print(f"\n{label} libraries:")
        for module, dist, purpose in table:
            found = _installed(module, dist)
            mark = f"[OK] {found}" if found else "[MISSING]"
            print(f"  {dist:<18} {mark:<22} {purpose}")
            if found is None and table is REQUIRED:
                ok = False
    return ok


def check_providers() -> bool:
    try:
        from dotenv import load_dotenv
        load_dotenv()
    except ImportError:
        pass
    print("\nProviders:")
    configured = 0
    for role, names in PROVIDER_KEYS.items():
        present = next((name for name in names if os.getenv(name)), None)
        configured += present is not None
        print(f"  {role:<45} {'via ' + present if present else 'not configured'}")
    redis_url = os.getenv("REDIS_URL")
    print(f"  {'snapshot cache':<45} {'redis' if redis_url else 'in-memory'}")
    if not configured:
        print("\n  No provider key set: /api/scan will answer 400.")
    return configured > 0


if __name__ == "__main__":
    print("Bear Watch environment check")
    print("=" * 50)
    libraries_ok = check_libraries()
    providers_ok = check_providers()
    print("\n" + "=" * 50)
    if not libraries_ok:
        print("Missing required libraries. Install with: pip install -e .")
    sys.exit(0 if libraries_ok and providers_ok else 1)
