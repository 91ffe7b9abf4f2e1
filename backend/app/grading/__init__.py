"""
Grading core: sandboxed code execution, test harness, per-student shuffling
and the durable grading queue.
"""
