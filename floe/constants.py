from __future__ import annotations

KIB = 1024
MIB = 1024 * KIB

TAG_CONTROL = 0x00
TAG_CHUNK = 0x01

INITIAL_CHUNK_SIZE = 160 * KIB
MIN_CHUNK_SIZE = 64 * KIB
MID_CHUNK_SIZE = 128 * KIB
MAX_CHUNK_SIZE = 256 * KIB

FAST_THROUGHPUT = 2 * MIB  # bytes/s
MEDIUM_THROUGHPUT = 500 * KIB  # bytes/s
ADAPT_INTERVAL = 20  # chunks

BUFFER_LIMIT = 1 * MIB
SEND_RETRY_DELAY_S = 0.1
POLL_INTERVAL_S = 0.01

SPEED_SAMPLE_S = 1.0
PROGRESS_EVERY_CHUNKS = 10

SENDER_LINGER_S = 5.0
