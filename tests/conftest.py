import os
import tempfile

# Keep the test run away from the real ~/.survey-relay config.
os.environ.setdefault("SURVEY_RELAY_APPDATA_DIR", tempfile.mkdtemp(prefix="survey-relay-tests-"))
