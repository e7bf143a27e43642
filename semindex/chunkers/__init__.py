from .markdown import Block, Chunk, chunk_text, chunk_lines, split_blocks, split_lines, build_chunk_id

__all__ = ["Block", "Chunk", "chunk_text", "chunk_lines", "split_blocks", "split_lines", "build_chunk_id"]
