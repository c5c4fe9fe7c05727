"""Audio side of the engine.

- sample_store: decoded sample buffers per instrument slot (WAV via the stdlib reader)
- voice: parameter resolution to scheduled voices, shared by both graphs
- live: sounddevice output graph driven by the audio clock
- offline: fixed-length virtual graph for loop export
- wav: 16-bit PCM WAV encoder
"""
