import os

# Embedding model used by the capture flow (face-api.js FaceNet, 128-d).
DEFAULT_ALGORITHM = "face-api.js-facenet"
DESCRIPTOR_LENGTH = int(os.getenv("FACEMATCH_DESCRIPTOR_LENGTH", "128"))

# Cosine similarity needed to accept a match. Empirical, recalibrate on real captures.
MATCH_THRESHOLD = float(os.getenv("FACEMATCH_THRESHOLD", "0.6"))

# Captures scored below this are rejected for matching/storage.
MIN_CONFIDENCE = float(os.getenv("FACEMATCH_MIN_CONFIDENCE", "0.5"))

# Stored blobs carry no confidence; descriptors read back from storage get this.
STORED_CONFIDENCE = 1.0

# Multi-sample averages report a slightly reduced aggregate confidence.
AVERAGE_CONFIDENCE_FACTOR = 0.95

LOG_LEVEL = os.getenv("FACEMATCH_LOG_LEVEL", "INFO")
