"""
Compactor App - Source-to-Destination Bucket Recompression

Responsibilities:
- Consume job messages {filename, path, id} from the broker
- Download path/filename from the source bucket into SCRATCH_DIR/id/filename
- Gzip the content (roundtrip by default, see utils.transform)
- Upload to the destination bucket under the same key
- Remove the scratch copy

Delivery is at-most-once: messages are acknowledged on receipt and failed
jobs are logged and dropped.
"""
