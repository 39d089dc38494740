from smppeer import crypto

# Quick one-off key generation for envelope signatures.
# - 32 random bytes, Base64url without padding.
# - Export it as SMPPEER_HMAC_KEY for the peer server AND every peer.

key = crypto.generate_key()
print("Shared HMAC key (base64url):")
print(key)
print()
print(f"export SMPPEER_HMAC_KEY={key}")
