"""
Local Document Pipeline

Runs user documents (images, PDFs, markdown) through staged jobs:
1. Upload - stage the input files in a job-scoped directory
2. Engine - bring the local OCR inference engine up (Nexa or Ollama)
3. Extract / Process - native worker turns pages into markdown
4. Convert - native worker renders markdown to PDF
5. Cleanup - delete staged inputs and stop the engine to free VRAM

Progress is streamed to the caller as newline-delimited JSON records.
"""

__version__ = "0.1.0"
