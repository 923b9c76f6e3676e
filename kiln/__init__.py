"""kiln static site builder.

kiln turns a tree of content documents and Jinja2 templates into a static
site. Repeated builds are incremental: unchanged files are not rewritten and
files the site no longer produces are pruned using a build manifest.

The main entry points are ``kiln.build.build`` for programmatic use and the
``kiln`` command-line interface.
"""

__all__ = ["__version__"]
__version__ = "0.3.0"
