"""Service layer: worker pool and survey facade."""
