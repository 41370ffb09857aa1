"""Transport layer: serial port access and request/acknowledgement handling."""
