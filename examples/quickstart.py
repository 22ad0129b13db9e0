# examples/quickstart.py
import logging
import numpy as np
import pandas as pd
import deferential_nb as dnb
import deferential_nb.deseq as deseq

logging.basicConfig(level=logging.INFO)

# --- make a tiny toy counts matrix (genes x samples) ---
genes = [f"gene{i+1}" for i in range(200)]
samples = [f"S{i+1:02d}" for i in range(12)]
rng = np.random.default_rng(1)
counts = rng.negative_binomial(n=10, p=0.1, size=(len(genes), len(samples)))

# sample meta with a batch and condition
batch = np.array(["b1"] * 6 + ["b2"] * 6)
cond = np.array(["A", "B"] * 6)

# first 20 genes up 4x in condition B
counts[:20, cond == "B"] *= 4

coldata = pd.DataFrame({"batch": batch, "condition": cond}, index=samples)
se = dnb.CountExperiment.from_pandas(
    pd.DataFrame(counts, index=genes, columns=samples),
    column_data=coldata,
)

# size factors land in column_data, normalized counts in an assay
se = se.deseq.estimate_size_factors()
se = se.deseq.normalized_counts()

# fit once, test several ways
model = se.deseq.fit("~ batch + condition", n_jobs=2)
res = model.results(contrast=("condition", "B", "A"))
print(res.top(10))
print(res.summary())

lrt = model.results(test="lrt", reduced="~ batch", shrink=False)
print(lrt.filter_summary["threshold"], len(lrt.significant()))

se = se.deseq.add_results(res)
print(se.row_data_df().head())
