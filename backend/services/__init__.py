# services — Domain services behind the routers and the batch jobs
