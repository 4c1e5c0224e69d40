"""Property paths and host, attribute decoding, metadata storage and CEL expression evaluation."""