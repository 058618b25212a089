"""
Allow running the pipeline as a module.

Usage:
    python -m docpipe run ocr scan1.png scan2.png --model deepseek-ocr
    python -m docpipe run split report.pdf --page-order 3,1,2
    python -m docpipe deps
    python -m docpipe serve
"""

from .cli import main

if __name__ == "__main__":
    main()
