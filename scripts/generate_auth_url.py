#!/usr/bin/env python3
"""
Generate an OAuth authorization URL for a streamer to onboard onto the bot.

The streamer opens the URL, approves the app and is redirected with a
`code`. POST that code together with the printed code_verifier to the
bot's onboarding endpoint.
"""

import sys

from dotenv import load_dotenv

load_dotenv()

from multikick import KickAuthClient, KickValidationError, MultiStreamConfig


def main():
    print("🚀 Multi-stream bot OAuth URL Generator")
    print("=" * 60)

    try:
        config = MultiStreamConfig.from_env()
    except KickValidationError as e:
        print(f"❌ Error: {e}")
        return 1

    auth_client = KickAuthClient(client_id=config.client_id, base_url=config.oauth_base_url)
    try:
        auth_url, code_verifier, state = auth_client.get_authorization_url(config.redirect_uri, config.scopes)
    except ValueError as e:
        print(f"❌ Error: {e}")
        return 1

    print("\n📋 OAUTH AUTHORIZATION INSTRUCTIONS")
    print("=" * 60)
    print("1. Send the streamer the following URL:")
    print(f"   {auth_url}")
    print(f"\n2. After approval Kick redirects to {config.redirect_uri}?code=...&state={state}")
    print("\n3. Complete onboarding with:")
    print(f"   curl -X POST http://localhost:{config.port}{config.add_streamer_path} \\")
    print("        -H 'Content-Type: application/json' \\")
    print("        -H \"Kick-App-Secret: $KICK_APP_SECRET\" \\")
    print(f"        -d '{{\"code\": \"<code>\", \"code_verifier\": \"{code_verifier}\"}}'")
    print("\n🔐 Keep the code_verifier private; it is single-use.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
