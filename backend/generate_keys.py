"""Generate JWT_SECRET and TOKEN_ENCRYPTION_KEY and write them into .env.

TOKEN_ENCRYPTION_KEY is a base64 AES-256 key. Rotating it makes every stored
platform credential unreadable, so only run this for a fresh environment.
"""

import os
import secrets

from omnisync.security import TokenCipher

jwt_secret = secrets.token_urlsafe(32)
encryption_key = TokenCipher.generate_key()

print(f"Generated JWT_SECRET: {jwt_secret}")
print(f"Generated TOKEN_ENCRYPTION_KEY: {encryption_key}")

template_path = ".env.template"
env_path = ".env"

if os.path.exists(env_path):
    print(f"Refusing to overwrite existing {env_path}; copy the values above by hand.")

elif os.path.exists(template_path):
    with open(template_path, "r") as f:
        lines = f.read().splitlines()

    new_lines = []
    for line in lines:
        if line.startswith("JWT_SECRET="):
            new_lines.append(f"JWT_SECRET={jwt_secret}")
        elif line.startswith("TOKEN_ENCRYPTION_KEY="):
            new_lines.append(f"TOKEN_ENCRYPTION_KEY={encryption_key}")
        else:
            new_lines.append(line)

    with open(env_path, "w") as f:
        f.write("\n".join(new_lines) + "\n")

    print(f"Successfully wrote to {env_path}")

else:
    print(f"Error: {template_path} not found. Please ensure it exists.")
