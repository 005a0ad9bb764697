from typing import Final

# used in time.sleep() calls to release the GIL and spin the thread
# 50 ms seems reasonable
SPIN_SLEEP_SECONDS = 0.05

LAMPORTS_PER_SOL: Final[int] = 1_000_000_000

# metadatum carrying the session jwt on authenticated calls
AUTHORIZATION_METADATA_KEY = "authorization"
