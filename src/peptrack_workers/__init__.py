"""PepTrack workers: projection jobs for dose adherence analytics."""
