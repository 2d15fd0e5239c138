import os
import sys

sys.path.insert(0, os.path.abspath("../src"))

project = "kef-score"
copyright = "2025, kef-score developers"
author = "kef-score developers"
release = "0.1.0"

extensions = [
    "sphinx.ext.autodoc",  # API pages from docstrings
    "sphinx.ext.napoleon",  # Google-style Args/Returns/Raises sections
    "sphinx_autodoc_typehints",
    "sphinx.ext.mathjax",  # the kernel derivative formulas
    "sphinx.ext.intersphinx",
]

autodoc_default_options = {
    "members": True,
    "undoc-members": True,
    "show-inheritance": True,
}
autodoc_member_order = "bysource"
autodoc_typehints = "description"

intersphinx_mapping = {
    "python": ("https://docs.python.org/3", None),
    "numpy": ("https://numpy.org/doc/stable", None),
    "scipy": ("https://docs.scipy.org/doc/scipy", None),
    "jax": ("https://docs.jax.dev/en/latest", None),
}

templates_path = ["_templates"]
exclude_patterns = ["_build"]

html_theme = "furo"
html_title = "kef-score"
