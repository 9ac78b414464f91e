"""pushdeploy: build, publish and deploy a container image on every push.

A push webhook names a repository; the pipeline clones it, numbers the
build from its first-parent history, builds and pushes the image, and asks
the update authority to roll the service onto it.
"""

__version__ = "0.1.0"
