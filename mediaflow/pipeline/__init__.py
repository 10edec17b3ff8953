"""
Media processing pipeline.

models      - MediaJob, Segment, RemoteJob, stage parameters
acquirer    - remote URL / direct upload -> local blob
segmenter   - fixed-length stream-copy slicing
engine      - local transcoding (ffmpeg filter chains)
remote      - remote AI stage orchestration
composer    - final concatenation and decoration
cost        - estimate and settlement
controller  - state machine driving a job
"""
