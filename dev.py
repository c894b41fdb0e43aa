#!/usr/bin/env python3

"""
Development utility for the OAuth gateway
"""

import argparse
import asyncio
import os
import secrets
import subprocess
import sys
from pathlib import Path

ENV_TEMPLATE = """# OAuth gateway configuration
ENVIRONMENT=development
PORT=3000
OAUTH2_CLIENT_ID=gateway-client
OAUTH2_CLIENT_SECRET={secret}
OAUTH2_GRANTS=client_credentials,refresh_token,authorization_code
OAUTH2_REDIRECT_URIS=http://localhost:5678/rest/oauth2-credential/callback
ACCESS_TOKEN_LIFETIME=3600
REFRESH_TOKEN_LIFETIME=1209600
UPSTREAM_BASE_URL=http://localhost:8080
TOKENS_FILE=tokens.json
LOG_LEVEL=INFO
"""

REQUIRED_VARS = ["OAUTH2_CLIENT_SECRET"]
RECOMMENDED_VARS = ["OAUTH2_CLIENT_ID", "OAUTH2_REDIRECT_URIS", "UPSTREAM_BASE_URL"]


def run_command(cmd, capture_output=False, check=True):
    """Run a shell command"""
    print(f"🔧 Running: {cmd}")
    result = subprocess.run(cmd, shell=True, capture_output=capture_output, text=True, check=check)
    if capture_output:
        return result.stdout.strip()
    return result.returncode


def generate_secret_key() -> str:
    """Generate a client secret suitable for OAUTH2_CLIENT_SECRET"""
    secret = secrets.token_urlsafe(32)
    print(f"🔑 Generated secret: {secret}")
    return secret


def setup_dev_environment(env_path: Path = Path(".env")) -> bool:
    """Write a starter .env file unless one already exists"""
    if env_path.exists():
        print(f"ℹ️  {env_path} already exists, leaving it untouched")
        return True

    env_path.write_text(ENV_TEMPLATE.format(secret=secrets.token_urlsafe(32)))
    print(f"✅ Created {env_path} with a fresh client secret")
    return True


def run_server():
    """Run development server with auto-reload"""
    run_command(f"{sys.executable} -m uvicorn main:create_app --factory --reload --port {os.getenv('PORT', '3000')}")


def run_tests():
    """Run the pytest suite"""
    return run_command(f"{sys.executable} -m pytest tests", check=False)


def check_env() -> bool:
    """Check environment configuration"""
    print("🔍 Checking environment configuration...")

    missing_required = [var for var in REQUIRED_VARS if not os.getenv(var)]
    missing_recommended = [var for var in RECOMMENDED_VARS if not os.getenv(var)]

    for var in missing_required:
        print(f"❌ Missing required variable: {var}")
    for var in missing_recommended:
        print(f"⚠️  Using default for: {var}")

    if not missing_required:
        print("✅ Environment configuration looks good!")

        print("\n📋 Current configuration:")
        print(f"   Environment: {os.getenv('ENVIRONMENT', 'development')}")
        print(f"   Port: {os.getenv('PORT', '3000')}")
        print(f"   Client ID: {os.getenv('OAUTH2_CLIENT_ID', 'gateway-client')}")
        print(f"   Upstream: {os.getenv('UPSTREAM_BASE_URL', 'http://localhost:8080')}")
        print(f"   Token file: {os.getenv('TOKENS_FILE', 'tokens.json')}")

        secret = os.getenv("OAUTH2_CLIENT_SECRET", "")
        if len(secret) < 16:
            print("⚠️  OAUTH2_CLIENT_SECRET is shorter than 16 characters")

    return len(missing_required) == 0


def status(base_url: str):
    """Show server status"""
    print("📊 Server Status:")

    import httpx

    async def check_health():
        async with httpx.AsyncClient() as client:
            response = await client.get(f"{base_url}/health", timeout=5)
            return response.json()

    try:
        health = asyncio.run(check_health())
    except httpx.HTTPError:
        print("❌ Local server is not running")
        return

    print("✅ Local server is running")
    print(f"   Status: {health.get('status')}")
    print(f"   Version: {health.get('version')}")
    print(f"   Environment: {health.get('environment')}")
    print(f"   Components: {health.get('components')}")


def run_flow(base_url: str) -> bool:
    """Walk the client_credentials flow against a running server"""
    from smoke_test import OAuthGatewayChecker

    secret = os.getenv("OAUTH2_CLIENT_SECRET")
    if not secret:
        print("❌ OAUTH2_CLIENT_SECRET must be set")
        return False

    async def flow():
        checker = OAuthGatewayChecker(base_url, os.getenv("OAUTH2_CLIENT_ID", "gateway-client"), secret)
        try:
            return await checker.run_all_checks()
        finally:
            await checker.close()

    return asyncio.run(flow())


def main():
    """Main CLI interface"""
    parser = argparse.ArgumentParser(
        description="Development utility for the OAuth gateway",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Available commands:
  setup       Create a .env file with a generated client secret
  run         Run development server
  test        Run tests
  secret      Generate secure client secret
  check       Check environment configuration
  status      Show server status
  flow        Run the token -> validate -> API walkthrough

Examples:
  python dev.py setup        # Set up development environment
  python dev.py run          # Run development server
  python dev.py flow         # Exercise a running server
        """
    )

    parser.add_argument(
        "command",
        choices=["setup", "run", "test", "secret", "check", "status", "flow"],
        help="Command to execute"
    )
    parser.add_argument("--url", default=f"http://localhost:{os.getenv('PORT', '3000')}", help="Server base URL")

    args = parser.parse_args()

    # Change to script directory
    os.chdir(Path(__file__).parent)

    from dotenv import load_dotenv
    load_dotenv()

    print("🛠️  OAuth Gateway - Development Utility")
    print("=" * 60)

    if args.command == "setup":
        if setup_dev_environment():
            print("\n🎉 Setup complete! Next steps:")
            print("   1. Review .env (set UPSTREAM_BASE_URL)")
            print("   2. Run: python dev.py run")
            print("   3. Check: python dev.py flow")

    elif args.command == "run":
        run_server()

    elif args.command == "test":
        sys.exit(run_tests())

    elif args.command == "secret":
        generate_secret_key()

    elif args.command == "check":
        sys.exit(0 if check_env() else 1)

    elif args.command == "status":
        status(args.url)

    elif args.command == "flow":
        sys.exit(0 if run_flow(args.url) else 1)

    else:
        parser.print_help()


if __name__ == "__main__":
    main()
