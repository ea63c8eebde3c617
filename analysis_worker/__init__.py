"""Soccer video analysis worker: Rekognition job orchestration and report aggregation."""
