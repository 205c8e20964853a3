"""askpop: PopClip companion that renders AI answers, Markdown and Mermaid."""

__version__ = "0.3.0"
