"""Pipeline orchestration module.

This module handles:
- Node selection for matrix cells
- Running Packer init/build with bounded retries
- Publishing container images of tagged runs
- Cloud cleanup side tasks
- The pipeline run as a whole (see packer_images.pipeline.service)
"""

# No eager imports: packer_images.updates.runner depends on
# packer_images.pipeline.runner, and the service depends on both.
# Access via packer_images.pipeline.service, etc.
