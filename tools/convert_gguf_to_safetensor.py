# (c) City96 || Apache-2.0 (apache.org/licenses/LICENSE-2.0)
import logging
import argparse
import torch
from tqdm import tqdm
from safetensors.torch import save_file

from gguf_dequant.loader import gguf_tensor_loader
from gguf_dequant.materialize import materialize_many
from gguf_dequant.ops import to_torch

DTYPES = {
    "float32": torch.float32,
    "float16": torch.float16,
    "bfloat16": torch.bfloat16,
}

def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Dequantize a GGUF file into safetensors")
    parser.add_argument("src", help="Input GGUF file")
    parser.add_argument("dst", help="Output safetensors file")
    parser.add_argument("--dtype", choices=list(DTYPES.keys()), default=None, help="Cast floating point tensors to this dtype (I32/I8 tensors keep their integer type)")
    parser.add_argument("--prefix", default=None, help="Only keep tensors with this prefix (stripped)")
    parser.add_argument("--workers", type=int, default=None, help="Decode threads per batch")
    parser.add_argument("--no-strict", action="store_true", help="Skip block consistency checks")
    return parser.parse_args(argv)

def main(argv=None):
    args = parse_args(argv)
    dtype = DTYPES.get(args.dtype)

    tensors = gguf_tensor_loader(args.src, handle_prefix=args.prefix)
    logging.info(f"Dequantizing {len(tensors)} tensors from {args.src}")

    sd = {}
    batch = max(args.workers or 1, 1) * 4
    for i in tqdm(range(0, len(tensors), batch)):
        for item in materialize_many(tensors[i:i + batch], strict=not args.no_strict, max_workers=args.workers):
            sd[item.name] = to_torch(item, dtype=dtype).contiguous()

    save_file(sd, args.dst)
    logging.info(f"Saved {len(sd)} tensors to {args.dst}")
    return sd

if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    main()
