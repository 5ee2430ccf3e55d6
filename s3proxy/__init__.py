"""
S3Proxy: Alluxio S3 path-rewriting proxy
=========================================

Lets S3 clients address an Alluxio worker without the ``/api/v1/s3``
part of the endpoint:

  • Native proxy  – threaded HTTP front-end with idempotent start/stop
  • Installer     – nginx deployment (package install, conf, start/stop scripts)
"""

__version__ = "1.0.0"
__app_name__ = "S3Proxy"
