"""media/ -- Uploaded file handling (avatars) for Mingle."""
